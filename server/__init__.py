"""Sample host service instrumented by otelboot."""
