"""Utility helpers for Terrarium."""
