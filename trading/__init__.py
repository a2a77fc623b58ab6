# trading/__init__.py
"""
Trading subsystem package.

Provides:
- Configuration & endpoints for Paradex (testnet/production)
- Core domain enums, models, errors and the order state machine
- Services for keys/signing, onboarding, auth, streams, instruments, orders and reconciliation
- SessionCoordinator driving one session from onboarding to teardown
"""
