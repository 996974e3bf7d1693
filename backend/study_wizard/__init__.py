"""Resumable study-creation wizard backend."""
