"""Optional modules that operate against a keep."""
