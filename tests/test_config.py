from __future__ import annotations

import pytest

from transport_emissions.config import SessionContext


def test_session_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TRANSPORT_EMISSIONS_TOKEN", "abc")
    monkeypatch.setenv("TRANSPORT_EMISSIONS_COMPANY_ID", " 7 ")
    monkeypatch.setenv("TRANSPORT_EMISSIONS_PRODUCT_ID", "not-a-number")

    session = SessionContext.from_env()

    assert session == SessionContext("abc", 7, None)
    assert session.has_credentials


def test_session_without_token_has_no_credentials(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("TRANSPORT_EMISSIONS_TOKEN", raising=False)
    monkeypatch.setenv("TRANSPORT_EMISSIONS_COMPANY_ID", "7")

    assert not SessionContext.from_env().has_credentials
    assert not SessionContext("abc", None, 1).has_credentials
