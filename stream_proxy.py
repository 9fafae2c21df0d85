"""
Same-origin relay for HLS manifests and media segments.

Manifests are rewritten so every segment, key, map and variant URI points
back at the relay; everything else is streamed through byte for byte.
"""
import codecs
import logging
import time
from dataclasses import dataclass
from typing import Iterable, Optional, Union
from urllib.parse import urlparse, urljoin, quote

import requests
from requests.packages.urllib3.exceptions import ReadTimeoutError

import config
from m3u8_ad_detector import AdFilterMode, split_lines
from m3u8_utils import URI_ATTRIBUTE, filter_m3u8_ad

logger = logging.getLogger(__name__)

RELAY_PATH = '/api/iptv/stream'

MANIFEST_CONTENT_TYPE = 'application/vnd.apple.mpegurl'
DEFAULT_MEDIA_CONTENT_TYPE = 'video/mp2t'
MANIFEST_CACHE_CONTROL = 'no-cache, no-store'
MEDIA_CACHE_CONTROL = 'public, max-age=60'

MANIFEST_EXTENSIONS = ('.m3u8', '.m3u')
MANIFEST_MIME_MARKERS = ('mpegurl', 'x-mpegurl', 'vnd.apple.mpegurl', 'x-scpls')
AMBIGUOUS_CONTENT_TYPES = ('text/plain', 'application/octet-stream', 'binary/octet-stream', 'text/html')
MANIFEST_BODY_MARKERS = (b'#EXTM3U', b'#EXT-X-')
SNIFF_BYTES = 1024
CHUNK_SIZE = 8192

FORWARDED_MEDIA_HEADERS = ('Content-Length', 'Content-Range', 'Accept-Ranges')

CORS_HEADERS = {
    'Access-Control-Allow-Origin': '*',
    'Access-Control-Allow-Methods': 'GET, HEAD, OPTIONS',
    'Access-Control-Allow-Headers': '*',
    'Access-Control-Expose-Headers': 'Content-Length, Content-Range, Accept-Ranges',
}


class StreamProxyError(Exception):
    status = 502
    message = 'Failed to proxy stream'

    def __init__(self, message=None, status=None):
        super().__init__(message or self.message)
        if message:
            self.message = message
        if status:
            self.status = status


class MissingParameter(StreamProxyError):
    status = 400
    message = 'Missing url parameter'


class UpstreamError(StreamProxyError):
    def __init__(self, status):
        super().__init__(f"Failed to fetch: {status}", status)


class UpstreamTimeout(StreamProxyError):
    status = 504
    message = 'Stream request timed out'


class TransportError(StreamProxyError):
    status = 502
    message = 'Failed to proxy stream'


@dataclass(frozen=True)
class ProxyRequest:
    target_url: str
    user_agent: Optional[str] = None
    referer: Optional[str] = None
    ad_filter: Optional[AdFilterMode] = None

    @classmethod
    def from_args(cls, args):
        """Build a request from relay query parameters (url, ua, referer, adfilter)."""
        target_url = (args.get('url') or '').strip()
        if not target_url:
            raise MissingParameter()
        ad_filter = args.get('adfilter')
        return cls(
            target_url=target_url,
            user_agent=args.get('ua') or None,
            referer=args.get('referer') or None,
            ad_filter=AdFilterMode.parse(ad_filter) if ad_filter else None,
        )

    def relay_base(self):
        """Relay URL prefix that carries this request's overrides; the target URL is appended."""
        params = ''
        if self.user_agent:
            params += f"ua={encode_uri_component(self.user_agent)}&"
        if self.referer:
            params += f"referer={encode_uri_component(self.referer)}&"
        if self.ad_filter:
            params += f"adfilter={self.ad_filter.value}&"
        return f"{RELAY_PATH}?{params}url="


@dataclass
class ProxyResponse:
    status: int
    content_type: str
    body: Union[str, bytes, Iterable[bytes]]
    headers: dict


def encode_uri_component(value):
    return quote(value, safe="-_.!~*'()")


def build_upstream_headers(proxy_request, range_header=None):
    """Headers of a browser loading the target from its own site, unless overridden."""
    parsed = urlparse(proxy_request.target_url)
    site = f"{parsed.scheme}://{parsed.netloc}"
    headers = {
        'User-Agent': proxy_request.user_agent or config.STREAM_USER_AGENT,
        'Accept': '*/*',
        'Referer': proxy_request.referer or f"{site}/",
        'Origin': site,
    }
    if range_header:
        headers['Range'] = range_header
    return headers


def resolve_url(base, relative):
    if relative.startswith(('http://', 'https://')):
        return relative
    try:
        return urljoin(base, relative)
    except ValueError:
        return base[:base.rfind('/') + 1] + relative


def rewrite_manifest(content, base_url, relay_base):
    """Point every URI of a manifest back at the relay."""
    def relay(uri):
        return f"{relay_base}{encode_uri_component(resolve_url(base_url, uri))}"

    rewritten = []
    for line in split_lines(content):
        trimmed = line.strip()
        if not trimmed:
            rewritten.append(line)
        elif trimmed.startswith('#'):
            if 'URI="' in trimmed:
                line = URI_ATTRIBUTE.sub(lambda m: f'URI="{relay(m.group(1))}"', line)
            rewritten.append(line)
        else:
            rewritten.append(relay(trimmed))
    return '\n'.join(rewritten)


def is_ambiguous(content_type):
    """True when the declared type says nothing useful about the body."""
    content_type = (content_type or '').lower()
    return not content_type or any(t in content_type for t in AMBIGUOUS_CONTENT_TYPES)


def is_manifest(target_url, content_type, body_prefix=None):
    """
    Decide whether a response is a playlist.
    The URL extension wins, then the declared type; ambiguous or missing
    types fall back to looking at the first bytes of the body.
    """
    if urlparse(target_url).path.lower().endswith(MANIFEST_EXTENSIONS):
        return True

    if any(marker in (content_type or '').lower() for marker in MANIFEST_MIME_MARKERS):
        return True

    if not body_prefix or not is_ambiguous(content_type):
        return False
    prefix = body_prefix[:SNIFF_BYTES]
    if prefix.startswith(codecs.BOM_UTF8):
        prefix = prefix[len(codecs.BOM_UTF8):]
    return prefix.lstrip().startswith(MANIFEST_BODY_MARKERS)


def check_deadline(deadline):
    """Raise UpstreamTimeout once the wall-clock deadline of an upstream call has passed."""
    if deadline is not None and time.monotonic() > deadline:
        raise UpstreamTimeout()


def peek_body(upstream, limit=SNIFF_BYTES, deadline=None):
    """Read up to limit bytes and return them with an iterator over the whole body."""
    chunks = upstream.iter_content(chunk_size=CHUNK_SIZE)
    pending = []
    size = 0
    for chunk in chunks:
        check_deadline(deadline)
        if not chunk:
            continue
        pending.append(chunk)
        size += len(chunk)
        if size >= limit:
            break

    def body():
        yield from pending
        yield from chunks

    return b''.join(pending)[:limit], body()


def fetch_upstream(proxy_request, range_header=None, timeout=None):
    """GET the target with spoofed headers; raises a StreamProxyError subclass on failure."""
    timeout = config.STREAM_TIMEOUT if timeout is None else timeout
    headers = build_upstream_headers(proxy_request, range_header)
    logger.info(f"Fetching upstream: {proxy_request.target_url}")
    try:
        upstream = requests.get(proxy_request.target_url, headers=headers, stream=True,
                                allow_redirects=True, timeout=(timeout, timeout))
    except requests.exceptions.Timeout:
        logger.warning(f"Upstream timed out after {timeout}s: {proxy_request.target_url}")
        raise UpstreamTimeout()
    except requests.RequestException as e:
        logger.error(f"Upstream request failed for {proxy_request.target_url}: {e}")
        raise TransportError()

    if not 200 <= upstream.status_code < 300:
        logger.warning(f"Upstream returned {upstream.status_code} for {proxy_request.target_url}")
        upstream.close()
        raise UpstreamError(upstream.status_code)

    return upstream


def read_text(body, deadline=None):
    """Join a streamed manifest body; read timeouts and a passed deadline surface as relay errors."""
    chunks = []
    try:
        for chunk in body:
            check_deadline(deadline)
            chunks.append(chunk)
    except requests.exceptions.Timeout:
        raise UpstreamTimeout()
    except requests.exceptions.ConnectionError as e:
        # iter_content wraps read timeouts in ConnectionError
        if e.args and isinstance(e.args[0], ReadTimeoutError):
            raise UpstreamTimeout()
        raise TransportError()
    except requests.RequestException:
        raise TransportError()
    return b''.join(chunks).decode('utf-8-sig', errors='replace')


def stream_body(upstream, body):
    try:
        for chunk in body:
            if chunk:
                yield chunk
    except requests.RequestException as e:
        logger.error(f"Media stream interrupted for {upstream.url}: {e}")
    finally:
        upstream.close()


def proxy_stream(proxy_request, range_header=None, timeout=None, head=False):
    """
    Fetch the target and return either a rewritten manifest or a passthrough media body.
    The whole call, up to the first media byte or the last manifest byte, is bounded
    by timeout. With head set, a media upstream is closed and no body is returned.
    """
    timeout = config.STREAM_TIMEOUT if timeout is None else timeout
    deadline = time.monotonic() + timeout
    upstream = fetch_upstream(proxy_request, range_header, timeout)
    content_type = upstream.headers.get('Content-Type', '')

    try:
        check_deadline(deadline)
        manifest = is_manifest(proxy_request.target_url, content_type)
        if not manifest and is_ambiguous(content_type):
            try:
                body_prefix, body = peek_body(upstream, deadline=deadline)
            except requests.RequestException as e:
                logger.error(f"Failed reading upstream body for {proxy_request.target_url}: {e}")
                raise TransportError()
            manifest = is_manifest(proxy_request.target_url, content_type, body_prefix)
        else:
            body = upstream.iter_content(chunk_size=CHUNK_SIZE)

        if manifest:
            try:
                text = read_text(body, deadline)
            finally:
                upstream.close()
    except UpstreamTimeout:
        upstream.close()
        logger.warning(f"Upstream exceeded {timeout}s: {proxy_request.target_url}")
        raise
    except StreamProxyError:
        upstream.close()
        raise

    if manifest:
        return ProxyResponse(
            status=200,
            content_type=MANIFEST_CONTENT_TYPE,
            body=relay_manifest(text, proxy_request),
            headers={'Cache-Control': MANIFEST_CACHE_CONTROL},
        )

    headers = {'Cache-Control': MEDIA_CACHE_CONTROL}
    for name in FORWARDED_MEDIA_HEADERS:
        if name in upstream.headers:
            headers[name] = upstream.headers[name]

    if head:
        upstream.close()
        body = []
    else:
        body = stream_body(upstream, body)

    return ProxyResponse(
        status=upstream.status_code,
        content_type=content_type or DEFAULT_MEDIA_CONTENT_TYPE,
        body=body,
        headers=headers,
    )


def relay_manifest(text, proxy_request):
    """Optionally strip ads, then route every URI of the manifest through the relay."""
    if proxy_request.ad_filter and proxy_request.ad_filter != AdFilterMode.OFF:
        text = filter_m3u8_ad(text, proxy_request.target_url, proxy_request.ad_filter, config.AD_KEYWORDS)
    return rewrite_manifest(text, proxy_request.target_url, proxy_request.relay_base())
