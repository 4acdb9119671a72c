"""Authorization-and-execution engine."""
