"""
Conformance Test Suite

This suite defines the NORMATIVE behavior of the settlement engine.
Any compliant implementation MUST pass these tests.

The tests are organized by invariant:
1. conservation.py - Balances never go negative and every asset nets to zero
2. atomicity.py - Opens and settlements land completely or not at all
3. idempotency.py - Each position settles exactly once, even across retries
4. determinism.py - Seeded runs reproduce the same prices and results
5. temporal.py - Expiry is judged from stored timestamps, never early
6. liquidation_floor.py - Futures and borrow losses are bounded by what was staked

These tests use hypothesis for property-based testing. Engines are built
inside each example so no state leaks between hypothesis runs.
"""
