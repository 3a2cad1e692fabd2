"""
PhiloGraph core: error taxonomy, domain models, guardrails and caches.
"""
