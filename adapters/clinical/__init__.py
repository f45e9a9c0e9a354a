"""Clinical content: the standard platform rule library."""
