"""Interactive terminal chat."""
