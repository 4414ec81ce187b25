"""OEM empanelment portal backend: tamper-evident audit trail."""

__version__ = "1.0.0"
