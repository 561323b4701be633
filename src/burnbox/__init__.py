"""Provisioning and operations for a Burn GPU development image."""
