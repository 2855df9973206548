"""Multiplexed port forwarding, userspace TCP/UDP/Unix proxies and tunnel message framing."""

__version__ = "0.1.0"