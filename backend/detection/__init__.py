"""
Snapshot comparison and event detection for the ATP live feed.
Flattens polled match and draw snapshots, diffs them against the previously
seen snapshot per endpoint, and classifies the differences into domain events.
"""
