"""Pure domain logic: no database or Flask imports."""
