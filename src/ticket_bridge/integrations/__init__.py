"""Platform adapters and the bridge router."""
