"""AzureGuard — Azure IaC topology, traffic and posture analyzer."""

__version__ = "0.1.0"
