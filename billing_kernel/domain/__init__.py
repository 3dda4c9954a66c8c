"""Pure domain helpers: clock and money arithmetic."""
