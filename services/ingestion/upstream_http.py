import json
from urllib import error, parse, request


REDACT_PARAMS = {"appid", "access_token", "refresh_token", "client_secret", "code"}


class HTTPStatusError(Exception):
    """Non-2xx answer from an upstream API. Only the redacted URL is kept."""

    def __init__(self, status: int, url: str):
        super().__init__(f"HTTP {status} from {url}")
        self.status = status
        self.url = url


def redact_url(url: str) -> str:
    parts = parse.urlsplit(url)
    if not parts.query:
        return url
    query = [
        (key, "***" if key.lower() in REDACT_PARAMS else value)
        for key, value in parse.parse_qsl(parts.query, keep_blank_values=True)
    ]
    return parse.urlunsplit(parts._replace(query=parse.urlencode(query, safe="*")))


def _read_json(req: request.Request, url: str, timeout: float):
    try:
        with request.urlopen(req, timeout=timeout) as resp:
            payload = resp.read().decode("utf-8")
    except error.HTTPError as exc:
        exc.close()
        raise HTTPStatusError(exc.code, redact_url(url)) from None
    return json.loads(payload)


def http_json(url: str, headers: dict[str, str] | None = None, params: dict | None = None, timeout: float = 30):
    if params:
        url = f"{url}?{parse.urlencode(params)}"
    req = request.Request(url, headers=headers or {})
    return _read_json(req, url, timeout)


def post_form(url: str, data: dict, timeout: float = 30):
    body = parse.urlencode(data).encode("utf-8")
    req = request.Request(url, data=body, method="POST")
    return _read_json(req, url, timeout)
