"""Tests for log processors."""

from fingate.logging_config import add_service_context, mask_secrets
from fingate.services.api_key_service import generate_api_key


def test_mask_secrets_hides_keys_and_webhook_secrets() -> None:
    key = generate_api_key()
    event = {
        "event": "debug_dump",
        "header": f"Bearer {key}",
        "secret": "whsec_Zm9vYmFyYmF6cXV4",
        "attempt": 2,
    }

    masked = mask_secrets(None, "info", event)

    assert masked["header"] == "Bearer fk_***"
    assert masked["secret"] == "whsec_***"
    assert masked["attempt"] == 2
    assert key not in str(masked)


def test_mask_secrets_recurses_into_containers() -> None:
    key = generate_api_key()
    event = {
        "event": "webhook_debug",
        "headers": {"Authorization": f"Bearer {key}", "X-Count": 3},
        "secrets": ["whsec_Zm9vYmFyYmF6cXV4", ("nested", {"deep": key})],
    }

    masked = mask_secrets(None, "info", event)

    assert masked["headers"] == {"Authorization": "Bearer fk_***", "X-Count": 3}
    assert masked["secrets"] == ["whsec_***", ["nested", {"deep": "fk_***"}]]
    assert key not in str(masked)


def test_mask_secrets_leaves_prefix_display_alone() -> None:
    """The 8-character display prefix is not a credential."""
    event = {"key_prefix": "fk_AbCdE"}
    assert mask_secrets(None, "info", event) == {"key_prefix": "fk_AbCdE"}


def test_service_context() -> None:
    event = add_service_context(None, "info", {"event": "x"})
    assert event["service"] == "FinGate"
    assert "environment" in event
