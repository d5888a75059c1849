"""Job execution engine: durable FIFO queue, one sequential worker, pluggable providers.

Jobs are recorded in a single JSON document, picked up oldest-first by a
background worker thread, and run through either a local coding-agent process
or a remote model driving a bounded tool-calling loop. Output streams into a
per-job log file plus a bounded in-memory tail that feeds the final report.
"""
