from __future__ import annotations

import argparse
import sys

from backend.app.config import load_settings
from backend.app.logging_config import configure_application_logging
from backend.app.services.credential_service import (
    ConfigurationError,
    CredentialLifecycleManager,
    RefreshExhausted,
    RetryPolicy,
)


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Fetch the extractor credential file once from the credential authority.",
    )
    parser.add_argument(
        "--source-url",
        default=None,
        help="Override MP3VAULT_CREDENTIAL_SOURCE_URL.",
    )
    parser.add_argument(
        "--access-key",
        default=None,
        help="Override MP3VAULT_CREDENTIAL_ACCESS_KEY.",
    )
    parser.add_argument(
        "--attempts",
        type=int,
        default=None,
        help="Override the number of refresh attempts.",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    settings = load_settings()
    configure_application_logging(settings)

    manager = CredentialLifecycleManager(
        artifact_path=settings.credential_path,
        source_url=args.source_url or settings.credential_source_url,
        access_key=args.access_key or settings.credential_access_key,
        retry_policy=RetryPolicy(
            max_attempts=args.attempts or settings.credential_retry_attempts,
            delay_seconds=settings.credential_retry_delay_seconds,
        ),
        http_timeout_seconds=settings.credential_http_timeout_seconds,
    )

    try:
        result = manager.refresh()
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 2
    except RefreshExhausted as exc:
        print(str(exc), file=sys.stderr)
        return 1

    if result.transferred:
        print(f"Wrote credentials to {manager.artifact_path}")
    else:
        print(f"Credentials at {manager.artifact_path} are already up to date")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
