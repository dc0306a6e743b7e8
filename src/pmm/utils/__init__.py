"""Utility helpers for pmm."""
