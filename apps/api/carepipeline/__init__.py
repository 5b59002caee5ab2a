"""Caregiver and client pipeline automation service."""
