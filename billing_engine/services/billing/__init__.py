"""Billing services: webhook ingestion, payments, subscriptions, entitlements.

Import the submodules directly; this package re-exports nothing so the
course planner can import checkout without pulling in the dispatcher.
"""
