"""
dbt44 - OSC control bridge for the SYNQ DBT-44 audio matrix.

Modules:
    osc: OSC codec, frame scanning and UDP socket helpers
    stream: Stream reassembly of inbound datagrams into OSC messages
    addresses: OSC path <-> variable id mapping and human-readable labels
    state: Last-known device state, value formatting and mute parsing
    mixer: Gain/mute operations plus the action and feedback registries
    session: UDP session lifecycle, connection status and sync
    config: YAML configuration loading and validation
    capture: Sync capture tool (dump everything the device sends)
    cli: Command-line entry point
"""

__version__ = "0.1.0"

# Note: Modules are imported on-demand to keep `python -m dbt44` light.
# Use: from dbt44 import session, mixer, etc.
