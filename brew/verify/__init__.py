"""Cross-device layer verification: collect reference dumps, then compare another run against them."""
