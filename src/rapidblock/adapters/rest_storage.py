"""Mastodon admin REST API adapter.

Implements the core ApplierPort over /api/v1/admin/domain_blocks. Each call
is an independent HTTP request: if a run fails halfway, the changes made
before the failure stay applied. The server records its own audit entries
for every admin API call.
"""

from __future__ import annotations

import json
import logging
import urllib.error
import urllib.parse
import urllib.request
from typing import Any, Optional

from rapidblock import __version__
from rapidblock.core.config import ServerConfig
from rapidblock.core.link_header import LinkHeaderError, find_rel, parse_link_headers
from rapidblock.core.models import ApplyStats, DesiredDocument, DomainBlock
from rapidblock.core.reconciler import BlockReconciler

LOGGER = logging.getLogger(__name__)

USER_AGENT = f"RapidBlock/{__version__} (+https://rapidblock.org/)"
DOMAIN_BLOCKS_PATH = "/api/v1/admin/domain_blocks"
DEFAULT_TIMEOUT = 30.0


class RestError(RuntimeError):
    """A single admin API call failed (transport, status, or decoding)."""

    def __init__(self, message: str, method: str, url: str, status: Optional[int] = None) -> None:
        status_text = f" status={status:03d}" if status is not None else ""
        super().__init__(f"{message}: method={method} url={url}{status_text}")
        self.method = method
        self.url = url
        self.status = status


class _NoRedirectHandler(urllib.request.HTTPRedirectHandler):
    """Surface redirects as errors instead of following them."""

    def redirect_request(self, req, fp, code, msg, headers, newurl):
        return None


def build_opener() -> urllib.request.OpenerDirector:
    return urllib.request.build_opener(_NoRedirectHandler)


def _form_bool(value: bool) -> str:
    return "true" if value else "false"


def _block_form(block: DomainBlock, include_domain: bool) -> list[tuple[str, str]]:
    """Encode ``block`` as form fields.

    Unset comments are left out entirely; sending an empty value would
    overwrite the comment with an empty string.
    """

    form: list[tuple[str, str]] = []
    if include_domain:
        form.append(("domain", block.domain))
    form.append(("severity", block.severity.label))
    if block.private_comment is not None:
        form.append(("private_comment", block.private_comment))
    if block.public_comment is not None:
        form.append(("public_comment", block.public_comment))
    form.append(("reject_media", _form_bool(block.reject_media)))
    form.append(("reject_reports", _form_bool(block.reject_reports)))
    form.append(("obfuscate", _form_bool(block.obfuscate)))
    return form


class RestApplier:
    """Applier that talks to a server's admin API with a bearer token."""

    def __init__(
        self,
        base_url: str,
        client_token: str,
        opener: Optional[urllib.request.OpenerDirector] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        if not base_url:
            raise ValueError("base_url is required for the REST backend")
        self._base_url = base_url.rstrip("/")
        self._client_token = client_token
        self._opener = opener or build_opener()
        self._timeout = timeout

    def _endpoint(self, block_id: Optional[int] = None) -> str:
        url = self._base_url + DOMAIN_BLOCKS_PATH
        if block_id is not None:
            url += "/" + urllib.parse.quote(str(block_id), safe="")
        return url

    def _request(
        self,
        method: str,
        url: str,
        form: Optional[list[tuple[str, str]]] = None,
    ) -> tuple[Any, list[str]]:
        """Send one request and return the decoded JSON body and Link header values."""

        data = None
        if form is not None:
            data = urllib.parse.urlencode(form).encode("utf-8")
        request = urllib.request.Request(url, data=data, method=method)
        request.add_header("Authorization", f"Bearer {self._client_token}")
        request.add_header("User-Agent", USER_AGENT)
        request.add_header("Accept", "application/json")
        if data is not None:
            request.add_header("Content-Type", "application/x-www-form-urlencoded")

        try:
            with self._opener.open(request, timeout=self._timeout) as response:
                status = response.status
                link_values = response.headers.get_all("Link") or []
                body = response.read()
        except urllib.error.HTTPError as exc:
            raise RestError("server returned unexpected HTTP status", method, url, exc.code) from exc
        except OSError as exc:
            raise RestError(f"HTTP request failed: {exc}", method, url) from exc

        if status != 200:
            raise RestError("server returned unexpected HTTP status", method, url, status)

        try:
            text = body.decode("utf-8").strip()
            if not text:
                return {}, link_values
            return json.loads(text), link_values
        except ValueError as exc:
            raise RestError(f"failed to decode HTTP response body: {exc}", method, url, status) from exc

    def query(self, out: dict[str, DomainBlock]) -> None:
        """Fetch every page of domain blocks, following rel="next" links."""

        snapshot: dict[str, DomainBlock] = {}
        url: Optional[str] = self._endpoint()
        visited: set[str] = set()
        while url is not None:
            if url in visited:
                raise RestError("pagination loop detected", "GET", url)
            visited.add(url)

            payload, link_values = self._request("GET", url)
            if not isinstance(payload, list):
                raise RestError("expected a JSON array of domain blocks", "GET", url, 200)
            try:
                for item in payload:
                    block = DomainBlock.from_json(item)
                    snapshot[block.domain] = block
            except (KeyError, TypeError, ValueError) as exc:
                raise RestError(f"malformed domain block in response: {exc}", "GET", url, 200) from exc

            try:
                links = parse_link_headers(link_values)
            except LinkHeaderError as exc:
                raise RestError(f"failed to extract Link headers: {exc}", "GET", url, 200) from exc
            next_link = find_rel(links, "next")
            url = urllib.parse.urljoin(url, next_link.url) if next_link else None

        LOGGER.info("Fetched %s domain block(s) from %s", len(snapshot), self._base_url)
        out.update(snapshot)

    def _expect_record(self, method: str, url: str, payload: Any) -> None:
        if not isinstance(payload, dict) or "domain" not in payload:
            raise RestError("expected a JSON domain block in the response", method, url, 200)

    def insert(self, block: DomainBlock) -> None:
        url = self._endpoint()
        result = self._request("POST", url, _block_form(block, include_domain=True))[0]
        self._expect_record("POST", url, result)
        LOGGER.debug("Created domain block: %s", result)

    def _endpoint_for(self, method: str, block: DomainBlock) -> str:
        if block.id is None:
            raise RestError(f"domain block {block.domain!r} has no id", method, self._endpoint())
        return self._endpoint(block.id)

    def update(self, block: DomainBlock) -> None:
        # The domain is immutable once the block exists, so it is not sent.
        url = self._endpoint_for("PUT", block)
        result = self._request("PUT", url, _block_form(block, include_domain=False))[0]
        self._expect_record("PUT", url, result)
        LOGGER.debug("Updated domain block: %s", result)

    def delete(self, block: DomainBlock) -> None:
        self._request("DELETE", self._endpoint_for("DELETE", block))


def apply_rest(
    server: ServerConfig,
    document: DesiredDocument,
    reconciler: Optional[BlockReconciler] = None,
    opener: Optional[urllib.request.OpenerDirector] = None,
) -> ApplyStats:
    """Reconcile one server through its admin API.

    There is no transaction here: a failure leaves earlier changes applied.
    """

    reconciler = reconciler or BlockReconciler()
    applier = RestApplier(server.uri, server.client_token, opener=opener)
    return reconciler.apply(applier, document)
