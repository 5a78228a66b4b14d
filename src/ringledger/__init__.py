"""Usage metering and trial billing ledger for a call-answering service."""

__version__ = "0.1.0"
