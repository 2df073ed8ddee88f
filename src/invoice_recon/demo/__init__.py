"""Demo session cloning and reset."""

from invoice_recon.demo.replicator import CloneResult, SessionReplicator

__all__ = ["CloneResult", "SessionReplicator"]
