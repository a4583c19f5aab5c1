"""Runtime components of the iteration daemon."""
