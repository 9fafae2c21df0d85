"""
Fetch-and-rewrite ad filtering for clients that cannot intercept
sub-playlist requests themselves.

A master playlist is fetched, every variant and rendition playlist it
references is fetched concurrently and filtered, and the filtered copies
are inlined back into the master as data: URIs.
"""
import base64
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, FIRST_EXCEPTION, wait

import requests

import config
from m3u8_ad_detector import AdFilterMode, split_lines
from m3u8_utils import URI_ATTRIBUTE, filter_m3u8_ad
from stream_proxy import (
    CHUNK_SIZE, MANIFEST_CONTENT_TYPE, ProxyRequest,
    TransportError, UpstreamError, UpstreamTimeout,
    build_upstream_headers, check_deadline, resolve_url,
)

logger = logging.getLogger(__name__)

STREAM_INF = '#EXT-X-STREAM-INF'
MEDIA = '#EXT-X-MEDIA'


class FilterCancelled(Exception):
    """The enclosing request went away; outstanding fetches were abandoned."""


def inline_playlist_uri(text):
    encoded = base64.b64encode(text.encode('utf-8')).decode('ascii')
    return f"data:{MANIFEST_CONTENT_TYPE};base64,{encoded}"


def fetch_playlist_text(url, user_agent=None, referer=None, cancel_event=None, timeout=None):
    """GET a playlist as text, giving up as soon as cancel_event is set or the timeout has passed."""
    timeout = config.STREAM_TIMEOUT if timeout is None else timeout
    if cancel_event is not None and cancel_event.is_set():
        raise FilterCancelled(url)

    deadline = time.monotonic() + timeout
    headers = build_upstream_headers(ProxyRequest(url, user_agent, referer))
    try:
        with requests.get(url, headers=headers, stream=True, allow_redirects=True,
                          timeout=(timeout, timeout)) as response:
            if not 200 <= response.status_code < 300:
                raise UpstreamError(response.status_code)
            chunks = []
            for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                if cancel_event is not None and cancel_event.is_set():
                    raise FilterCancelled(url)
                check_deadline(deadline)
                chunks.append(chunk)
    except requests.exceptions.Timeout:
        raise UpstreamTimeout()
    except requests.RequestException as e:
        logger.info(f"Playlist fetch failed for {url}: {e}")
        raise TransportError()
    return b''.join(chunks).decode('utf-8-sig', errors='replace')


def find_sub_playlists(lines):
    """Map line index -> URI for every variant URL line and #EXT-X-MEDIA URI attribute."""
    references = {}
    for i, line in enumerate(lines):
        trimmed = line.strip()
        if trimmed.startswith(MEDIA) and 'URI="' in trimmed:
            match = URI_ATTRIBUTE.search(trimmed)
            if match:
                references[i] = match.group(1)
        elif trimmed and not trimmed.startswith('#') and i > 0 \
                and lines[i - 1].strip().startswith(STREAM_INF):
            references[i] = trimmed
    return references


def process_master_playlist(master_url, mode=AdFilterMode.HEURISTIC, keywords=(),
                            user_agent=None, referer=None, cancel_event=None,
                            max_workers=None, timeout=None):
    """
    Return master_url's playlist with ads filtered out of every sub-playlist.

    A media playlist is simply filtered. For a master playlist each
    referenced sub-playlist is fetched on a worker thread; one that fails is
    left pointing at its original URI while the rest are inlined. Setting
    cancel_event abandons whatever is still outstanding and raises
    FilterCancelled. Failure to fetch the master itself raises the relay
    error for it.
    """
    cancel_event = cancel_event or threading.Event()
    mode = AdFilterMode.parse(mode)
    fetch_kwargs = dict(user_agent=user_agent, referer=referer, cancel_event=cancel_event, timeout=timeout)

    master = fetch_playlist_text(master_url, **fetch_kwargs)
    if STREAM_INF not in master:
        return filter_m3u8_ad(master, master_url, mode, keywords)

    lines = split_lines(master)
    references = find_sub_playlists(lines)

    def filter_sub_playlist(index, uri):
        absolute_url = resolve_url(master_url, uri)
        try:
            sub = fetch_playlist_text(absolute_url, **fetch_kwargs)
        except FilterCancelled:
            raise
        except Exception as e:
            logger.warning(f"Sub-playlist left unfiltered ({absolute_url}): {e}")
            return index, lines[index]
        inlined = inline_playlist_uri(filter_m3u8_ad(sub, absolute_url, mode, keywords))
        if lines[index].strip().startswith(MEDIA):
            return index, lines[index].replace(f'URI="{uri}"', f'URI="{inlined}"')
        return index, inlined

    if references:
        executor = ThreadPoolExecutor(max_workers=max_workers or config.FANOUT_WORKERS)
        try:
            futures = [executor.submit(filter_sub_playlist, i, uri) for i, uri in references.items()]
            done, pending = wait(futures, return_when=FIRST_EXCEPTION)
            for future in pending:
                future.cancel()
            if cancel_event.is_set() or any(f.exception() for f in done):
                cancel_event.set()
                raise FilterCancelled(master_url)
            for future in done:
                index, replacement = future.result()
                lines[index] = replacement
        finally:
            executor.shutdown(wait=False)

    logger.info(f"Filtered {len(references)} sub-playlists of {master_url} ({mode.value})")
    return '\n'.join(lines)
