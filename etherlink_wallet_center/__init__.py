"""Wallet session and token transfer service for the Etherlink network."""
