"""
detection — Client-side fall detection and alert lifecycle.

Sub-modules:
    fall_model     — feature extraction + hand-tuned fall score
    fall_detector  — sliding window, sequence gate, cooldown
    alert_session  — countdown / manual trigger state machine
    client         — HTTP client for the alert creation endpoint
"""
