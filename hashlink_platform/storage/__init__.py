"""
Repository backends for Hashlink Platform (in-memory and PostgreSQL).
"""
