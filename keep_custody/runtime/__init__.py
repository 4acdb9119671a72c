"""Target-execution runtimes."""
