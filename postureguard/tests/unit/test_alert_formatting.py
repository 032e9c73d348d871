from __future__ import annotations

from postureguard.domain.alerts import flatten_description, humanize_key, strip_html, summarize_alert


def test_flatten_nested_description() -> None:
    value = {
        "@type": "type.googleapis.com/google.apps.alertcenter.type.MailPhishing",
        "domainId": {"customerPrimaryDomain": "example.com"},
        "isInternal": False,
        "messages": [{"subjectText": "Invoice"}, {"subjectText": "Urgent"}],
    }
    assert flatten_description(value) == "domain Id: example.com, is Internal: false, messages: Invoice; Urgent"


def test_flatten_strips_markup_and_handles_missing() -> None:
    assert flatten_description("<p>Suspicious <b>login</b></p>") == "Suspicious login"
    assert flatten_description(None) == "-"
    assert flatten_description({"only": 3}) == "3"
    assert strip_html("<div>a &amp; b</div>") == "a & b"


def test_humanize_key() -> None:
    assert humanize_key("customerPrimaryDomain") == "customer Primary Domain"


def test_summarize_alert_skips_opaque_fields() -> None:
    description = {
        "@type": "x",
        "requestId": "abc",
        "token": "QUJDREVGR0hJSktMTU5PUFFSU1RVVldYWVo0NTY3ODkw",
        "email": "user@example.com",
        "state": None,
    }
    assert summarize_alert(description) == [("email", "user@example.com")]
    assert summarize_alert("Plain text") == [("description", "Plain text")]
    assert summarize_alert(None) == []
