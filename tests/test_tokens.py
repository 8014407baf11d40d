"""
Tests for token generation and session storage.
"""

import re

import pytest

from csrfblock.config import CSRFBlockConfig
from csrfblock.request import Request
from csrfblock.tokens import TokenGenerator, TokenStore, default_session_getter

from tests.conftest import make_request, make_scope, make_receive


class TestTokenGenerator:

    @pytest.mark.parametrize("length", [1, 8, 16, 40])
    def test_length_and_alphabet(self, length):
        token = TokenGenerator(length).generate()
        assert len(token) == length
        assert re.fullmatch(r"[0-9a-f]+", token)

    def test_callable(self):
        assert len(TokenGenerator(12)()) == 12

    def test_tokens_differ(self):
        generator = TokenGenerator(40)
        tokens = {generator.generate() for _ in range(200)}
        assert len(tokens) == 200


class TestTokenStore:

    def make_store(self, **options) -> TokenStore:
        return TokenStore.from_config(CSRFBlockConfig(**options))

    def test_get_missing(self):
        assert self.make_store().get({}) is None

    def test_set_get_delete(self):
        store = self.make_store()
        session = {"other": "x"}
        store.set(session, "abc")
        assert store.get(session) == "abc"
        store.delete(session)
        assert session == {"other": "x"}

    def test_delete_missing_is_noop(self):
        store = self.make_store()
        session = {}
        store.delete(session)
        assert session == {}

    def test_ensure_creates_once(self):
        store = self.make_store(token_length=20)
        session = {}
        first = store.ensure(session)
        assert len(first) == 20
        assert store.ensure(session) == first
        assert session == {"csrfblock.token": first}

    def test_ensure_replaces_empty_value(self):
        store = self.make_store()
        session = {"csrfblock.token": ""}
        assert store.ensure(session) != ""

    def test_only_configured_key_touched(self):
        store = self.make_store(session_key="csrf")
        session = {"csrfblock.token": "keep"}
        store.ensure(session)
        assert session["csrfblock.token"] == "keep"
        assert "csrf" in session


class TestSessionGetter:

    def test_from_request_state(self):
        session = {}
        request = make_request(session=session)
        assert default_session_getter(request) is session

    def test_from_scope(self):
        session = {}
        request = Request(make_scope(session=session), make_receive())
        assert default_session_getter(request) is session

    def test_state_wins_over_scope(self):
        state_session, scope_session = {"a": 1}, {"b": 2}
        request = Request(make_scope(session=scope_session), make_receive())
        request.state["session"] = state_session
        assert default_session_getter(request) is state_session

    def test_missing(self):
        assert default_session_getter(make_request()) is None

    def test_empty_session_is_still_a_session(self):
        session = {}
        request = make_request(session=session)
        assert default_session_getter(request) == {}
