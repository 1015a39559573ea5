"""EC2 platform defaults, endpoint checks, rail ordering and NIC topology grouping."""

__version__ = "0.1.0"
__all__ = ["platform", "endpoint", "topo", "topo_writer"]