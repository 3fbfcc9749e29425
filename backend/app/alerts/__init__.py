"""
alerts — SOS alert ingestion and multi-channel dispatch.

Sub-modules:
    channels/    — Provider adapters (email, SMS, SMS fallback, push)
    ingestion    — Validate + persist alerts, hand off to dispatch
    dispatcher   — Concurrent fan-out across channels, fallback SMS
    reconciler   — SMS delivery receipts → alert state
    proximity    — Nearby-device selection for push
    contacts     — Emergency-contact resolution (legacy / canonical ids)
    store        — Persistence contract + in-memory store
    sql_store    — SQLAlchemy store
    models       — Data structures shared across the system
"""
