"""Lending Engine - Services Package

Integrations with external catalog providers:
- Open Library metadata lookup for book intake by ISBN
"""
