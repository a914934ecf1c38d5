import logging
import re
from typing import List, Optional, Tuple

logger = logging.getLogger(__name__)

SIP_VERSION = "SIP/2.0"

# RFC 3261 compact header forms
_COMPACT_HEADERS = {
    "i": "call-id",
    "f": "from",
    "t": "to",
    "v": "via",
    "m": "contact",
    "l": "content-length",
    "c": "content-type",
    "k": "supported",
}


def _normalize(name: str) -> str:
    name = name.strip().lower()
    return _COMPACT_HEADERS.get(name, name)


class SipMessage:
    """A parsed SIP request or response."""

    def __init__(self, method: Optional[str] = None, uri: Optional[str] = None,
                 status_code: int = 0, status_text: str = "",
                 headers: Optional[List[Tuple[str, str]]] = None, body: str = ""):
        self.method = method
        self.uri = uri
        self.status_code = status_code
        self.status_text = status_text
        self.headers: List[Tuple[str, str]] = list(headers or [])
        self.body = body

    @property
    def is_request(self) -> bool:
        return self.method is not None

    @property
    def is_response(self) -> bool:
        return self.method is None

    def get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        """First value of a header, matched case-insensitively (compact forms included)."""
        key = _normalize(name)
        for header, value in self.headers:
            if _normalize(header) == key:
                return value
        return default

    def get_all(self, name: str) -> List[str]:
        key = _normalize(name)
        return [value for header, value in self.headers if _normalize(header) == key]

    def set(self, name: str, value: str) -> None:
        """Replace every occurrence of a header with a single value."""
        self.remove(name)
        self.headers.append((name, value))

    def remove(self, name: str) -> None:
        key = _normalize(name)
        self.headers = [(h, v) for h, v in self.headers if _normalize(h) != key]

    @property
    def call_id(self) -> Optional[str]:
        return self.get("call-id")

    @property
    def cseq(self) -> Tuple[int, str]:
        """CSeq number and method."""
        value = self.get("cseq", "")
        parts = value.split()
        if len(parts) != 2 or not parts[0].isdigit():
            raise ValueError(f"Malformed CSeq header: {value!r}")
        return int(parts[0]), parts[1].upper()

    def to_bytes(self) -> bytes:
        if self.is_request:
            first_line = f"{self.method} {self.uri} {SIP_VERSION}"
        else:
            first_line = f"{SIP_VERSION} {self.status_code} {self.status_text}"

        body = self.body.encode()
        lines = [first_line]
        lines.extend(f"{name}: {value}" for name, value in self.headers
                     if _normalize(name) != "content-length")
        lines.append(f"Content-Length: {len(body)}")
        return ("\r\n".join(lines) + "\r\n\r\n").encode() + body

    def __repr__(self) -> str:
        if self.is_request:
            return f"<SipMessage {self.method} {self.uri} call-id={self.call_id}>"
        return f"<SipMessage {self.status_code} {self.status_text} call-id={self.call_id}>"


def parse_sip_message(message: str) -> SipMessage:
    """
    Parse a raw SIP message (request or response).

    Raises:
        ValueError: if the start line or headers are malformed.
    """
    head, sep, body = message.partition("\r\n\r\n")
    if not sep:
        head, sep, body = message.partition("\n\n")

    lines = head.splitlines()
    if not lines or not lines[0].strip():
        raise ValueError("Empty SIP message")

    first_line = lines[0].strip()
    parts = first_line.split(" ", 2)
    if len(parts) < 2:
        raise ValueError(f"Malformed start line: {first_line!r}")

    if first_line.startswith(SIP_VERSION):
        if not parts[1].isdigit():
            raise ValueError(f"Malformed status line: {first_line!r}")
        msg = SipMessage(status_code=int(parts[1]), status_text=parts[2] if len(parts) > 2 else "")
    else:
        if len(parts) != 3 or parts[2] != SIP_VERSION:
            raise ValueError(f"Malformed request line: {first_line!r}")
        msg = SipMessage(method=parts[0].upper(), uri=parts[1])

    for line in lines[1:]:
        if not line.strip():
            continue
        if line[0] in " \t" and msg.headers:
            # Folded continuation of the previous header
            name, value = msg.headers[-1]
            msg.headers[-1] = (name, f"{value} {line.strip()}")
            continue
        if ":" not in line:
            raise ValueError(f"Malformed header line: {line!r}")
        name, value = line.split(":", 1)
        msg.headers.append((name.strip(), value.strip()))

    length = msg.get("content-length")
    if length and length.isdigit():
        body = body.encode()[:int(length)].decode(errors="ignore")
    msg.body = body
    return msg


def make_response(request: SipMessage, status_code: int, status_text: str,
                  to_tag: Optional[str] = None, body: str = "",
                  content_type: Optional[str] = None) -> SipMessage:
    """Build a response that mirrors the dialog headers of `request`."""
    response = SipMessage(status_code=status_code, status_text=status_text)
    for via in request.get_all("via"):
        response.headers.append(("Via", via))

    to_header = request.get("to", "")
    if to_tag and header_param(to_header, "tag") is None:
        to_header = f"{to_header};tag={to_tag}"

    response.headers.append(("From", request.get("from", "")))
    response.headers.append(("To", to_header))
    response.headers.append(("Call-ID", request.call_id or ""))
    response.headers.append(("CSeq", request.get("cseq", "")))
    if content_type:
        response.headers.append(("Content-Type", content_type))
    response.body = body
    return response


def header_param(value: Optional[str], name: str) -> Optional[str]:
    """Value of a ;name=value parameter outside the <...> URI part of a header."""
    if not value:
        return None
    if ">" in value:
        params = value.rsplit(">", 1)[1]
    else:
        params = value.split(";", 1)[1] if ";" in value else ""
    for param in params.split(";"):
        key, _, param_value = param.strip().partition("=")
        if key.lower() == name.lower():
            return param_value
    return None


def extract_uri(value: Optional[str]) -> Optional[str]:
    """The URI inside a From/To/Contact header value."""
    if not value:
        return None
    match = re.search(r"<([^>]+)>", value)
    if match:
        return match.group(1)
    return value.split(";", 1)[0].strip()


def uri_host_port(uri: str, default_port: int = 5060) -> Tuple[str, int]:
    """Host and port of a sip: URI."""
    rest = uri.split(":", 1)[1] if ":" in uri else uri
    rest = rest.split(";", 1)[0].split("?", 1)[0]
    if "@" in rest:
        rest = rest.split("@", 1)[1]
    if ":" in rest:
        host, port = rest.rsplit(":", 1)
        if port.isdigit():
            return host, int(port)
    return rest, default_port
