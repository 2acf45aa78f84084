"""
Challenge Pipeline — Data Pipeline Package.

Components:
    - ingestion: EEA / OpenAQ adapters, rate limiter, validation, orchestrator
    - scoring: windowed challenge scoring engine
    - store: raw-SQL write and aggregate contract
"""
