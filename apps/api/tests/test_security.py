from onboardflow_api.security import passwords_match, redact_sensitive_text


def test_redacts_assignments_and_query_tokens() -> None:
    redacted = redact_sensitive_text("password=hunter2 url=https://x.test/?token=abc123&mode=1")

    assert redacted is not None
    assert "hunter2" not in redacted
    assert "abc123" not in redacted
    assert redacted.startswith("password=[REDACTED] url=https://x.test/?token=")


def test_redacts_deployment_ids() -> None:
    redacted = redact_sensitive_text("POST https://script.google.com/macros/s/AKfycbzABCDEFGHIJKLMNOP/exec failed")

    assert redacted == "POST https://script.google.com/macros/s/[REDACTED]/exec failed"


def test_redact_passes_none_through() -> None:
    assert redact_sensitive_text(None) is None


def test_passwords_match() -> None:
    assert passwords_match("s3cret", "s3cret") is True
    assert passwords_match("s3cret", "other") is False
    assert passwords_match("s3cret", None) is False
    assert passwords_match("", "anything") is True
