"""Provision containerized application stacks on Proxmox LXC with a privileged fallback."""

__version__ = "0.1.0"
