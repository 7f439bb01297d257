"""
Id derivation and request orchestration for Hashlink Platform.
"""
