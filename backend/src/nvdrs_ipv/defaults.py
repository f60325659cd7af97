"""Shared default configuration for the CLI and programmatic entry points."""


def default_config() -> dict:
    """Return a fresh default config dict.

    ``config.load_config`` deep-merges the YAML file over this. There is no
    ``reconciliation`` section: source weights and conflict thresholds must
    be set in every config file.
    """
    return {
        "llm": {
            "api_url": "http://localhost:1234/v1/chat/completions",
            "model": "openai/gpt-oss-120b",
            "temperature": 0.1,
            "max_tokens": None,
            "timeout_seconds": 30,
            "retry_attempts": 3,
            "retry_base_delay_seconds": 1.0,
            "rate_limit_requests": None,
            "rate_limit_window_seconds": 60.0,
        },
        "prompt": {
            "version_tag": None,
            "indicator_fields": [],
        },
        "pipeline": {
            "batch_size": 100,
            "max_items": None,
            "max_concurrency": 1,
            "min_narrative_chars": 10,
        },
        "storage": {
            "database_url": "./nvdrs_ipv.db",
        },
        "experiment": {
            "name": "ipv-detection",
            "dataset_name": None,
            "notes": None,
        },
        "logging": {
            "level": "INFO",
            "format": "%(asctime)s %(levelname)s %(name)s: %(message)s",
        },
    }
