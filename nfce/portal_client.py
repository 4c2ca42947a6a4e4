"""
SEFAZ-BA NFC-e portal scraper.

Drives the ASP.NET lookup portal at nfe.sefaz.ba.gov.br through its page
sequence for one access key:

    access-key page -> captcha -> DANFE page -> tabbed view -> products tab

DESIGN PRINCIPLES:
1. One client = one run = one session. The httpx cookie jar carries the
   ASP.NET session; the FormState decoded from each response feeds the
   next POST. Nothing is shared across runs.
2. Never POST with an invalid FormState (empty __VIEWSTATE).
3. Response bodies are classified against an ordered table of known portal
   messages before being treated as success.
4. A rejected captcha restarts from a fresh page + challenge, up to
   captcha_max_attempts times (0 = until the caller cancels).
5. Transport and decode failures are raised as ScrapeStepError with the
   step name. All methods are async.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum

import httpx

from nfce import form_state
from nfce.access_key import is_valid_access_key, normalize_access_key
from nfce.captcha import CaptchaChallenge, CaptchaSolver
from nfce.config import settings
from nfce.errors import (
    CaptchaInvalidError,
    FormStateError,
    InvalidAccessKeyError,
    InvoiceNotFoundError,
    NFCeError,
    NoCaptchaSolverError,
    ScrapeStepError,
    ScrapeTimeoutError,
    SessionExpiredError,
    StructureNotFoundError,
    UnexpectedResponseError,
)
from nfce.extraction import parse_nfe_tab, parse_products_tab
from nfce.form_state import FormState
from nfce.models import Receipt

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Portal endpoints and form fields
# ---------------------------------------------------------------------------

ACCESS_KEY_PAGE = "/servicos/nfce/Modulos/Geral/NFCEC_consulta_chave_acesso.aspx"
CAPTCHA_ENDPOINT = "/servicos/nfce/Modulos/AntiRobo/NFCEC_anti_robo.aspx"
DANFE_PAGE = "/servicos/nfce/Modulos/Geral/NFCEC_consulta_danfe.aspx"
TABS_PAGE = "/servicos/nfce/Modulos/Geral/NFCEC_consulta_abas.aspx"

FIELD_ACCESS_KEY = "txt_chave_acesso"
FIELD_CAPTCHA = "txt_cod_antirobo"
FIELD_SUBMIT = "btn_consulta_completa"
FIELD_VIEW_TABS = "btn_visualizar_abas"
FIELD_ORIGIN_CALL = "hd_origem_chamada"


class Tab(str, Enum):
    """Tabs of the "Visualizar em Abas" page; values are image-button names."""
    NFE = "btn_aba_nfe"
    ISSUER = "btn_aba_emitente"
    RECIPIENT = "btn_aba_destinatario"
    PRODUCTS = "btn_aba_produtos"
    TOTALS = "btn_aba_totais"
    TRANSPORT = "btn_aba_transporte"
    BILLING = "btn_aba_cobranca"
    ADDITIONAL_INFO = "btn_aba_infadicionais"


class ScrapeState(str, Enum):
    INITIAL = "initial"
    ACCESS_KEY_PAGE_LOADED = "access_key_page_loaded"
    CAPTCHA_ISSUED = "captcha_issued"
    SUBMITTED = "submitted"
    TABS_LOADED = "tabs_loaded"
    PRODUCTS_LOADED = "products_loaded"
    COMPLETE = "complete"
    ERROR = "error"


# ---------------------------------------------------------------------------
# Response classification
# ---------------------------------------------------------------------------

# Checked in order, case-insensitively. Extend here when the portal changes
# its wording.
ERROR_PATTERNS: list[tuple[str, type[NFCeError]]] = [
    ("chave de acesso inválida", InvalidAccessKeyError),
    ("nfc-e não encontrada", InvoiceNotFoundError),
    ("captcha inválido", CaptchaInvalidError),
    ("código de segurança inválido", CaptchaInvalidError),
    ("código incorreto tente novamente", CaptchaInvalidError),
    ("sessão expirada", SessionExpiredError),
    ("sessão expirou", SessionExpiredError),
    ("object reference not set", UnexpectedResponseError),
    ("ocorreu um erro", UnexpectedResponseError),
]

# Still showing the captcha input after a submit means the answer was refused.
CAPTCHA_INPUT_SELECTOR = f"input[name='{FIELD_CAPTCHA}']"


def classify_response(page: str | bytes) -> NFCeError | None:
    """Return the portal error a response body signals, or None on success."""
    if isinstance(page, bytes):
        text = page.decode("utf-8", errors="replace")
    else:
        text = page
    lowered = text.lower()

    for pattern, error_cls in ERROR_PATTERNS:
        if pattern in lowered:
            return error_cls(f"portal responded: {pattern}")

    if form_state.has_element(text, CAPTCHA_INPUT_SELECTOR):
        return CaptchaInvalidError("portal returned the captcha form again")
    return None


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------

@dataclass
class ScrapeResult:
    """Parsed receipt plus the raw pages it came from."""
    receipt: Receipt
    danfe_html: str = ""
    nfe_tab_html: str = ""
    products_tab_html: str = ""


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class SefazBAClient:
    """Async scraper for one NFC-e lookup on the SEFAZ-BA portal."""

    def __init__(
        self,
        captcha_solver: CaptchaSolver | None = None,
        base_url: str | None = None,
        timeout: int | None = None,
        rate_limit_seconds: float | None = None,
        captcha_max_attempts: int | None = None,
        verify_tls: bool | None = None,
    ):
        self._captcha_solver = captcha_solver
        self._base_url = (base_url or settings.portal_base_url).rstrip("/")
        self._rate_limit_seconds = (
            settings.rate_limit_seconds if rate_limit_seconds is None else rate_limit_seconds
        )
        self._captcha_max_attempts = (
            settings.captcha_max_attempts if captcha_max_attempts is None else captcha_max_attempts
        )
        self._semaphore = asyncio.Semaphore(1)
        self._last_request_time: float = 0.0
        self._form_state: FormState | None = None
        self.state = ScrapeState.INITIAL
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=timeout or settings.request_timeout_seconds,
            verify=settings.verify_tls if verify_tls is None else verify_tls,
            headers={
                "User-Agent": settings.user_agent,
                "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8",
                "Accept-Language": settings.accept_language,
            },
            follow_redirects=True,
        )

    async def __aenter__(self) -> SefazBAClient:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def _set_state(self, state: ScrapeState) -> None:
        logger.debug("Scrape state %s -> %s", self.state.value, state.value)
        self.state = state

    async def _rate_limit(self) -> None:
        """Ensure minimum interval between requests."""
        async with self._semaphore:
            elapsed = time.monotonic() - self._last_request_time
            if elapsed < self._rate_limit_seconds:
                await asyncio.sleep(self._rate_limit_seconds - elapsed)
            self._last_request_time = time.monotonic()

    async def _request(
        self,
        step: str,
        method: str,
        path: str,
        *,
        data: dict[str, str] | None = None,
        params: dict[str, str] | None = None,
        referer: str | None = None,
    ) -> httpx.Response:
        """Send one request; map transport failures to step-tagged errors."""
        await self._rate_limit()
        headers = {"Referer": f"{self._base_url}{referer}"} if referer else None
        start = time.monotonic()
        try:
            if method == "POST":
                resp = await self._client.post(path, data=data, headers=headers)
            else:
                resp = await self._client.get(path, params=params, headers=headers)
        except httpx.TimeoutException as e:
            raise ScrapeTimeoutError(f"{step}: request timed out") from e
        except httpx.HTTPError as e:
            raise ScrapeStepError(step, "request failed", e) from e

        elapsed_ms = int((time.monotonic() - start) * 1000)
        logger.debug("%s %s -> %d (%d ms)", method, path, resp.status_code, elapsed_ms)

        if not resp.is_success:
            raise ScrapeStepError(step, f"portal returned HTTP {resp.status_code}")
        return resp

    def _decode_state(self, step: str, page: str) -> FormState:
        try:
            return form_state.decode(page)
        except FormStateError as e:
            raise ScrapeStepError(step, "could not decode form state", e) from e

    def _require_state(self, step: str) -> FormState:
        if self._form_state is None or not self._form_state.is_valid:
            raise ScrapeStepError(step, "no valid form state to submit with")
        return self._form_state

    def _carry_state(self, step: str, page: str) -> None:
        """Replace the carried FormState when the response has a usable one."""
        state = self._decode_state(step, page)
        if state.is_valid:
            self._form_state = state

    # ------------------------------------------------------------------
    # Protocol steps
    # ------------------------------------------------------------------

    async def _load_access_key_page(self) -> None:
        """GET the access-key page and capture its FormState."""
        step = "load access key page"
        resp = await self._request(step, "GET", ACCESS_KEY_PAGE)
        state = self._decode_state(step, resp.text)
        if not state.is_valid:
            raise ScrapeStepError(step, "page has no __VIEWSTATE")
        self._form_state = state
        self._set_state(ScrapeState.ACCESS_KEY_PAGE_LOADED)

    async def _fetch_captcha(self) -> CaptchaChallenge:
        """GET a captcha image for the current session. FormState is untouched."""
        timestamp = str(int(time.time() * 1000))
        resp = await self._request(
            "fetch captcha", "GET", CAPTCHA_ENDPOINT,
            params={"t": timestamp},
            referer=ACCESS_KEY_PAGE,
        )
        content_type = resp.headers.get("content-type", "image/png").split(";")[0].strip()
        self._set_state(ScrapeState.CAPTCHA_ISSUED)
        return CaptchaChallenge(id=timestamp, image=resp.content, content_type=content_type)

    async def _submit_access_key(self, access_key: str, solution: str) -> str:
        """POST key + captcha answer; returns the DANFE page."""
        step = "submit access key"
        state = self._require_state(step)
        data = form_state.encode(state, {
            FIELD_ACCESS_KEY: access_key,
            FIELD_CAPTCHA: solution,
            FIELD_SUBMIT: "Consultar",
        })
        resp = await self._request(step, "POST", ACCESS_KEY_PAGE, data=data, referer=ACCESS_KEY_PAGE)
        body = resp.text

        error = classify_response(body)
        if error is not None:
            raise error

        self._carry_state(step, body)
        self._set_state(ScrapeState.SUBMITTED)
        return body

    async def _navigate_to_tabs(self, danfe_html: str) -> str:
        """Click "Visualizar em Abas" on the DANFE page."""
        step = "navigate to tabs"
        self._form_state = self._decode_state(step, danfe_html)
        state = self._require_state(step)
        data = form_state.encode(state, {
            FIELD_VIEW_TABS: "Visualizar em Abas",
            FIELD_ORIGIN_CALL: "",
        })
        resp = await self._request(step, "POST", DANFE_PAGE, data=data, referer=DANFE_PAGE)
        self._carry_state(step, resp.text)
        self._set_state(ScrapeState.TABS_LOADED)
        return resp.text

    async def _load_tab(self, current_html: str, tab: Tab) -> str:
        """Select a tab. Tabs are image buttons, so the click coordinates are posted."""
        step = f"load tab {tab.name.lower()}"
        self._form_state = self._decode_state(step, current_html)
        state = self._require_state(step)
        data = form_state.encode(state, {
            f"{tab.value}.x": "10",
            f"{tab.value}.y": "10",
            FIELD_ORIGIN_CALL: "",
        })
        resp = await self._request(step, "POST", TABS_PAGE, data=data, referer=TABS_PAGE)
        self._carry_state(step, resp.text)
        if tab is Tab.PRODUCTS:
            self._set_state(ScrapeState.PRODUCTS_LOADED)
        return resp.text

    def _parse_result(self, danfe_html: str, tabs_html: str, products_html: str) -> ScrapeResult:
        receipt = parse_nfe_tab(tabs_html)
        try:
            receipt.items = parse_products_tab(products_html)
        except StructureNotFoundError:
            # Some receipts come without a products tab.
            logger.warning("Products tab missing for key %s; returning no items", receipt.key)
            receipt.items = []
        return ScrapeResult(
            receipt=receipt,
            danfe_html=danfe_html,
            nfe_tab_html=tabs_html,
            products_tab_html=products_html,
        )

    # ------------------------------------------------------------------
    # Public flow
    # ------------------------------------------------------------------

    async def get_captcha(self) -> CaptchaChallenge:
        """Start a fresh session and return its captcha challenge."""
        await self._load_access_key_page()
        return await self._fetch_captcha()

    async def submit_with_captcha(self, access_key: str, solution: str) -> ScrapeResult:
        """Submit an externally solved captcha and finish the flow."""
        access_key = normalize_access_key(access_key)
        if not is_valid_access_key(access_key):
            raise InvalidAccessKeyError(f"invalid access key: {access_key!r}")

        if self._form_state is None or not self._form_state.is_valid:
            await self._load_access_key_page()

        danfe_html = await self._submit_access_key(access_key, solution)
        tabs_html = await self._navigate_to_tabs(danfe_html)
        products_html = await self._load_tab(tabs_html, Tab.PRODUCTS)

        result = self._parse_result(danfe_html, tabs_html, products_html)
        self._set_state(ScrapeState.COMPLETE)
        return result

    async def fetch_by_access_key(self, access_key: str) -> ScrapeResult:
        """
        Full scrape flow:
        1. Load the access-key page (session + FormState)
        2. Fetch a captcha challenge
        3. Solve it through the configured solver
        4. Submit key + answer, then open the tabs and the products tab
        5. Parse header and items

        A rejected captcha restarts at step 1 with a fresh challenge.
        """
        access_key = normalize_access_key(access_key)
        if not is_valid_access_key(access_key):
            raise InvalidAccessKeyError(f"invalid access key: {access_key!r}")
        if self._captcha_solver is None:
            raise NoCaptchaSolverError("a captcha solver is required")

        attempt = 0
        try:
            while True:
                attempt += 1
                challenge = await self.get_captcha()
                solution = await self._captcha_solver.solve(challenge)

                try:
                    result = await self.submit_with_captcha(access_key, solution.text)
                except CaptchaInvalidError as e:
                    if self._captcha_max_attempts and attempt >= self._captcha_max_attempts:
                        raise CaptchaInvalidError(
                            f"captcha rejected after {attempt} attempts: {e}"
                        ) from e
                    logger.warning(
                        "Captcha rejected for key %s (attempt %d), fetching a new one",
                        access_key, attempt,
                    )
                    continue

                logger.info(
                    "Fetched NFC-e %s: %d items, total %d cents (attempt %d)",
                    access_key, len(result.receipt.items), result.receipt.total, attempt,
                )
                return result
        except BaseException:
            self._set_state(ScrapeState.ERROR)
            raise

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
