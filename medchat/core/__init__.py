"""Pure domain logic: exceptions, context resolution, transcript rules."""
