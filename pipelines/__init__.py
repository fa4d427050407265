"""
Data pipelines for transit analytics

This directory contains the scheduled jobs:
- aggregate_daily.py: Turn a day of raw positions into trip logs, segment
  speeds, route performance, stop headways and the network summary
- cleanup_positions.py: Purge raw positions past the retention window
"""
