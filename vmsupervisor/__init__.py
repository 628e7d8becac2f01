"""VM lifecycle supervisor: tracks, admits and drives VMs on a single host."""

__version__ = "1.0.0"
