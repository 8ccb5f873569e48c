# ============================================================================
# INFRASTRUCTURE MODULE
# ============================================================================
# EPOCH: 1 - RULE WORKER
# STATUS: Infrastructure - External identity integration
# PURPOSE: Authentication against the identity provider
# CREATED: 18 OCT 2026
# ============================================================================
"""
Infrastructure module for the job worker.

Provides:
- auth: JWKS-backed inbound validation and outbound service tokens
"""
