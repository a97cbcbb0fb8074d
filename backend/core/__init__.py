"""Core building blocks for the odds and settlement engine.

This package contains pure, side-effect-free modules:

- ``odds_math``     American odds conversion, implied probability, payouts
- ``cashout``       fair-value pricing of an early exit
- ``errors``        typed error taxonomy shared by services and the API
- ``sport_config``  supported sports and their provider keys
- ``settings``      EngineSettings, every deployment knob

Nothing in this package imports from ``backend.services`` or ``backend.models``.
"""
