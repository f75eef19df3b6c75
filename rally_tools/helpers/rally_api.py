# Rally API client.
#
# Every remote call the tools make goes through RallyAPI.request/page_through.
# The base URL for an environment comes from the config (api.<ENV>.url) and
# all resource paths are appended under /v2:
#
#   GET    /v2/workflowRules?page=<n>p<size>[&filter=name=<name>]
#       - Page through rules. Response body is a JSON:API document
#         `{ data: [ {id, type, attributes, relationships}, ... ], links }`.
#   GET    /v2/workflowRules/<id>
#   POST   /v2/workflowRules            body `{ data: {type, attributes} }`
#   PATCH  /v2/workflowRules/<id>       body `{ data: {id, type, attributes?, relationships?} }`
#
#   GET    /v2/presets?page=<n>p<size>[&filter=name=<name>]
#   GET    /v2/presets/<id>?include=metadata
#   POST   /v2/presets / PATCH /v2/presets/<id>
#   GET    /v2/presets/<id>/artifacts/preset   - preset code as plain text
#   PUT    /v2/presets/<id>/artifacts/preset   - replace preset code (plain text body)
#
# Relationships in responses carry `{id, type}` of the environment they came
# from only; translating ids between environments is the sync engine's job.
#
# Failures are wrapped once in TransportError and never retried here.

import warnings
# Suppress the LibreSSL/OpenSSL compatibility warning from urllib3 v2
warnings.filterwarnings(
    "ignore",
    message="urllib3 v2 only supports OpenSSL 1.1.1+",
    module="urllib3"
)

import logging
from typing import Any, Dict, List, Optional

import requests

from . import rally_logging  # noqa: F401  (registers Logger.trace)
from .errors import TransportError
from .rally_config import RallyConfig

LOG = logging.getLogger("rally_api")

JSONAPI_CONTENT_TYPE = "application/vnd.api+json"


class RallyAPI:
    def __init__(self, config: RallyConfig, session: Optional[requests.Session] = None):
        self.config = config
        self.session = session or requests.Session()

    def _url(self, env: str, path: str) -> str:
        base = self.config.env(env).url.rstrip("/")
        if not path.startswith("/"):
            path = "/" + path
        return f"{base}/v2{path}"

    def _headers(self, env: str, text: bool) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.config.env(env).key}",
            "Accept": "text/plain" if text else JSONAPI_CONTENT_TYPE,
        }
        headers["Content-Type"] = "text/plain" if text else JSONAPI_CONTENT_TYPE
        return headers

    def request(
        self,
        env: str,
        path: str,
        method: str = "GET",
        payload: Any = None,
        query: Optional[Dict[str, Any]] = None,
        text: bool = False,
    ) -> Any:
        """Make one API call and return the decoded body.

        With text=True the payload is sent as-is and the response text is
        returned (used for preset code). Otherwise the payload is JSON encoded
        and the JSON:API document is returned; an empty body gives None.
        """
        url = self._url(env, path)
        headers = self._headers(env, text)
        LOG.trace("[trace] %s %s query=%s", method, url, query)

        kwargs: Dict[str, Any] = {
            "headers": headers,
            "params": query,
            "timeout": self.config.timeout,
            "verify": self.config.verify_tls,
        }
        if payload is not None:
            if text:
                kwargs["data"] = payload.encode("utf-8") if isinstance(payload, str) else payload
            else:
                kwargs["json"] = payload

        try:
            resp = self.session.request(method, url, **kwargs)
        except requests.RequestException as exc:
            raise TransportError(env, method, path, None, str(exc)) from exc

        if resp.status_code >= 400:
            LOG.trace("[trace] %s %s returned %s: %s", method, url, resp.status_code, resp.text[:200])
            raise TransportError(env, method, path, resp.status_code, resp.text)

        if text:
            return resp.text
        if resp.status_code == 204 or not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as exc:
            raise TransportError(env, method, path, resp.status_code, "response is not JSON") from exc

    def page_through(
        self,
        env: str,
        path: str,
        query: Optional[Dict[str, Any]] = None,
        chunk_size: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Collect every resource object of a collection, one page at a time."""
        size = chunk_size or self.config.chunk_size
        out: List[Dict[str, Any]] = []
        page = 1
        while True:
            q = dict(query or {})
            q["page"] = f"{page}p{size}"
            doc = self.request(env, path, query=q) or {}
            data = doc.get("data") or []
            out.extend(data)
            LOG.trace("[trace] %s page %d on %s: %d item(s)", path, page, env, len(data))
            if len(data) < size:
                break
            page += 1
        return out

    def test_access(self, env: str) -> int:
        """Return the HTTP status of a cheap authenticated GET against env."""
        try:
            self.request(env, "/presets", query={"page": "1p1"})
        except TransportError as exc:
            if exc.unreachable:
                raise
            return exc.status
        return 200
