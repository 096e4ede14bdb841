"""
Boundary layer for external system integrations.

Handles all interactions with the MedChat backend. Provides the collaborator
contracts and their HTTP and in-memory implementations.
"""
