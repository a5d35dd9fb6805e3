"""
bulkload - parallel ClickHouse loader for a directory of columnar files.

Loads every file in a directory into one ClickHouse table, one external
load per file, with a bounded number of loads in flight and a deadline
per load. Files that load successfully are moved into a done/ subdirectory
so the next run only picks up what is left.

Usage:
    bulkload --dir /data/orc --table events -w 4 --timeout-secs 1800

Environment Variables:
    BULKLOAD_PASSWORD: ClickHouse password
    BULKLOAD_WORKERS: Max concurrent loads (default: 4)
    BULKLOAD_METRICS_ENDPOINT: Optional Dynatrace endpoint for run metrics
"""

__version__ = "0.3.0"
