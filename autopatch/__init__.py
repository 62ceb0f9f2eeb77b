"""Auto-Patch: security analysis and automated remediation for pushed commits."""

__version__ = "0.1.0"
