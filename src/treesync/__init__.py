"""treesync: multi-device file reconciliation over content-addressed hash trees."""

__version__ = "0.1.0"
