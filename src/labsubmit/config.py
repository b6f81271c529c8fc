"""Configuration loader.

The submission service reads its configuration from environment variables so
the same container image can run locally, under docker‑compose or on Cloud
Run.  Reasonable defaults are provided so that local development works out
of the box.

Environment variables:

``LABSUBMIT_API_KEY``
    Shared secret expected in the ``x‑api‑key`` header.  When empty the check
    is skipped.

``LABSUBMIT_EXECUTION_URL``
    Endpoint of the Piston compatible execution backend.  Defaults to the
    public ``emkc.org`` instance.

``LABSUBMIT_EXECUTION_TOKEN``
    Optional value sent as the ``Authorization`` header to the backend.

``LABSUBMIT_RUN_TIMEOUT_SECONDS`` / ``LABSUBMIT_GRADED_TIMEOUT_SECONDS``
    Per-attempt deadline for interactive runs (default 10) and for graded
    runs made at submission time (default 20).

``LABSUBMIT_MAX_RETRIES``
    Retries after the first attempt when the backend is unreachable.
    Default 2.

``LABSUBMIT_BACKOFF_BASE_MS`` / ``LABSUBMIT_BACKOFF_FACTOR`` / ``LABSUBMIT_BACKOFF_CAP_MS``
    Exponential backoff between retries.  Defaults 500, 2 and 4000.

``LABSUBMIT_LANGUAGES_FILE``
    Path to a JSON language snapshot replacing the built-in table.

``LABSUBMIT_STORAGE_BACKEND``
    ``local`` (default) or ``gcs``.

``LABSUBMIT_STORAGE_PATH``
    Base directory for the ``local`` backend.  Defaults to ``/tmp/labsubmit``.

``LABSUBMIT_GCS_BUCKET``
    Bucket name, required when the backend is ``gcs``.

``PORT``
    The port on which the API server listens.  Defaults to 8080.
"""

from __future__ import annotations

import os
from dataclasses import dataclass


def _parse_float(name: str, default: float) -> float:
    val = os.getenv(name)
    if val is None:
        return default
    try:
        return float(val)
    except ValueError:
        raise ValueError(f"Invalid number for {name}: {val}")


def _int_var(name: str, default: int) -> int:
    val = os.getenv(name)
    if val is None:
        return default
    try:
        return int(val)
    except ValueError:
        raise ValueError(f"Invalid integer for {name}: {val}")


@dataclass
class Config:
    """Centralised configuration object."""

    api_key: str
    execution_url: str
    execution_token: str | None
    run_timeout_seconds: float
    graded_timeout_seconds: float
    max_retries: int
    backoff_base_ms: int
    backoff_factor: float
    backoff_cap_ms: int
    languages_file: str | None
    storage_backend: str
    storage_path: str
    gcs_bucket: str | None
    port: int

    @classmethod
    def load(cls) -> "Config":
        # API key may be empty in local development but should be set in production.
        api_key = os.getenv("LABSUBMIT_API_KEY", "")

        execution_url = os.getenv(
            "LABSUBMIT_EXECUTION_URL", "https://emkc.org/api/v2/piston/execute"
        )
        if not execution_url.startswith(("http://", "https://")):
            raise ValueError(f"Invalid LABSUBMIT_EXECUTION_URL: {execution_url}")
        execution_token = os.getenv("LABSUBMIT_EXECUTION_TOKEN") or None

        run_timeout = _parse_float("LABSUBMIT_RUN_TIMEOUT_SECONDS", 10.0)
        graded_timeout = _parse_float("LABSUBMIT_GRADED_TIMEOUT_SECONDS", 20.0)
        if run_timeout <= 0 or graded_timeout <= 0:
            raise ValueError("Execution timeouts must be positive")

        max_retries = _int_var("LABSUBMIT_MAX_RETRIES", 2)
        if max_retries < 0:
            raise ValueError(f"Invalid LABSUBMIT_MAX_RETRIES: {max_retries}")
        backoff_base_ms = _int_var("LABSUBMIT_BACKOFF_BASE_MS", 500)
        backoff_factor = _parse_float("LABSUBMIT_BACKOFF_FACTOR", 2.0)
        backoff_cap_ms = _int_var("LABSUBMIT_BACKOFF_CAP_MS", 4000)

        storage_backend = os.getenv("LABSUBMIT_STORAGE_BACKEND", "local").lower()
        if storage_backend not in {"local", "gcs"}:
            raise ValueError(
                f"Invalid LABSUBMIT_STORAGE_BACKEND: {storage_backend}. Use 'local' or 'gcs'."
            )
        storage_path = os.getenv("LABSUBMIT_STORAGE_PATH", "/tmp/labsubmit")
        gcs_bucket = os.getenv("LABSUBMIT_GCS_BUCKET")
        if storage_backend == "gcs" and not gcs_bucket:
            raise RuntimeError(
                "LABSUBMIT_GCS_BUCKET must be set when using the GCS storage backend"
            )

        return cls(
            api_key=api_key,
            execution_url=execution_url,
            execution_token=execution_token,
            run_timeout_seconds=run_timeout,
            graded_timeout_seconds=graded_timeout,
            max_retries=max_retries,
            backoff_base_ms=backoff_base_ms,
            backoff_factor=backoff_factor,
            backoff_cap_ms=backoff_cap_ms,
            languages_file=os.getenv("LABSUBMIT_LANGUAGES_FILE") or None,
            storage_backend=storage_backend,
            storage_path=storage_path,
            gcs_bucket=gcs_bucket,
            port=_int_var("PORT", 8080),
        )

    @classmethod
    def from_env(cls) -> "Config":
        """
        Alternate constructor used by the API to load configuration.

        This wrapper calls :meth:`load` to construct the configuration.
        It exists to provide a more intuitive name when consumed in
        application code.
        """
        return cls.load()
