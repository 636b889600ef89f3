"""Terminal front-ends."""
