"""remediator - closed-loop automated fault remediation."""

__version__ = "0.1.0"
