"""Endpoint and customer catalogues, field rules, transport, enrichment, secrets."""
