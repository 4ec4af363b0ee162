"""Pure domain logic: stabilisation, units and trend statistics."""
