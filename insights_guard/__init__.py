"""Admin insights guard: policy enforcement and audit logging for privileged admin operations."""

__version__ = "0.1.0"
