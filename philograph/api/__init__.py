"""
PhiloGraph - HTTP API
"""
