"""Clients for the source forum and the destination repository."""
