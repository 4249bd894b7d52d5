"""Pure helpers: address parsing, geo maths, number parsing."""
