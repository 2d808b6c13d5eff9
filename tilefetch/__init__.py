"""On-demand imagery tile fetching against a remote processing service."""
