"""
Ingestion: turn raw fetch-service payloads into canonical records.

- normalizer: payload -> pull request / workflow run / incident records
- pipeline: fetch batch lifecycle, background fetch workers, reparse, backfill
"""
