"""Domain layer: slice lifecycle rules, independent of any driver."""
