"""Tests for nfce.form_state: hidden postback token codec."""

from __future__ import annotations

import pytest

from nfce import form_state
from nfce.errors import FormStateError
from nfce.form_state import FormState


@pytest.mark.unit
class TestDecode:
    def test_reads_all_tokens(self, access_key_page):
        state = form_state.decode(access_key_page)
        assert state.view_state.startswith("/wEPDwUKLTQ2NjE0MjQ5Ng")
        assert state.view_state_generator == "4A1C7B2E"
        assert state.event_validation == "/wEdAAXc1Q2mP0Q8rE3mT6yG5yHk"
        assert state.last_focus == ""
        assert state.event_target == ""
        assert state.is_valid

    def test_accepts_bytes(self, access_key_page):
        assert form_state.decode(access_key_page.encode("utf-8")) == form_state.decode(access_key_page)

    def test_missing_fields_decode_empty(self):
        state = form_state.decode("<html><body><form><input name='other' value='x'/></form></body></html>")
        assert state == FormState()
        assert state.is_valid is False

    @pytest.mark.parametrize("page", ["", "   \n", b""])
    def test_empty_page_raises(self, page):
        with pytest.raises(FormStateError):
            form_state.decode(page)


@pytest.mark.unit
class TestEncode:
    def test_always_present_fields(self):
        values = form_state.encode(FormState(view_state="vs"))
        assert values == {
            "__VIEWSTATE": "vs",
            "__LASTFOCUS": "",
            "__EVENTTARGET": "",
            "__EVENTARGUMENT": "",
        }

    def test_empty_tokens_omitted(self):
        values = form_state.encode(FormState())
        assert "__VIEWSTATE" not in values
        assert "__VIEWSTATEGENERATOR" not in values
        assert "__EVENTVALIDATION" not in values
        assert values["__EVENTTARGET"] == ""

    def test_extra_fields_merged_and_win(self):
        state = FormState(view_state="vs", view_state_generator="gen", event_validation="ev", event_target="x")
        values = form_state.encode(state, {"txt_chave_acesso": "123", "__EVENTTARGET": "btn"})
        assert values["__VIEWSTATE"] == "vs"
        assert values["__VIEWSTATEGENERATOR"] == "gen"
        assert values["__EVENTVALIDATION"] == "ev"
        assert values["txt_chave_acesso"] == "123"
        assert values["__EVENTTARGET"] == "btn"

    def test_decoded_state_feeds_next_post(self, danfe_page):
        values = form_state.encode(form_state.decode(danfe_page), {"btn_visualizar_abas": "Visualizar em Abas"})
        assert values["__VIEWSTATE"].endswith("ZGFuZmU=")
        assert values["btn_visualizar_abas"] == "Visualizar em Abas"


@pytest.mark.unit
class TestHasElement:
    def test_present(self, access_key_page):
        assert form_state.has_element(access_key_page, "input[name='txt_cod_antirobo']")

    def test_absent(self, danfe_page):
        assert not form_state.has_element(danfe_page, "input[name='txt_cod_antirobo']")

    def test_empty_page(self):
        assert form_state.has_element("", "input") is False
