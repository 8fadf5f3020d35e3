#!/usr/bin/env python3
"""
Entry point for running dbt44 as a module.

Usage:
    python -m dbt44 monitor --config config.yaml
    python -m dbt44 action step_output_gain output=1 step_preset=-3
    python -m dbt44 capture 192.168.1.100 dbt44-device
"""

from dbt44.cli import main

main()
