"""
Ad filtering and URL normalisation for HLS playlists.

filter_m3u8_ad combines three ad signals:
  1. #EXT-X-CUE-OUT / #EXT-X-CUE-IN regions (SCTE-35 style markers)
  2. custom keyword matches on segment lines
  3. heuristic block scoring (see m3u8_ad_detector) when no cue tags exist
and rewrites relative URLs to absolute ones so the result can be served
from a different location than the original playlist.
"""
import re
import logging
from urllib.parse import urlparse

from m3u8_ad_detector import (
    AdFilterMode, CUE_IN, CUE_OUT, DISCONTINUITY, EXTINF,
    find_ad_line_indices, split_lines, unwrap_relay_url,
)

logger = logging.getLogger(__name__)

URI_ATTRIBUTE = re.compile(r'URI="([^"]+)"')
ABSOLUTE_PREFIXES = ('http', 'blob:', 'data:')


def base_locations(base_url):
    """(directory, origin) used to resolve path-relative and root-relative URLs."""
    effective = unwrap_relay_url(base_url or '')
    base_path = effective[:effective.rfind('/') + 1]
    parsed = urlparse(effective)
    origin = f"{parsed.scheme}://{parsed.netloc}" if parsed.scheme and parsed.netloc else ''
    return base_path, origin


def absolutize(uri, base_path, origin):
    if uri.startswith(ABSOLUTE_PREFIXES):
        return uri
    if uri.startswith('/'):
        return f"{origin}{uri}" if origin else uri
    return f"{base_path}{uri}"


def rewrite_uri_attributes(line, base_path, origin):
    return URI_ATTRIBUTE.sub(lambda m: f'URI="{absolutize(m.group(1), base_path, origin)}"', line)


def _backtrack(processed):
    """Drop the #EXTINF / discontinuity lines left behind by a removed segment."""
    while processed:
        last = processed[-1].strip()
        if last.startswith(EXTINF) or last == DISCONTINUITY:
            processed.pop()
        else:
            break


def filter_m3u8_ad(content, base_url, mode=AdFilterMode.HEURISTIC, custom_keywords=()):
    """
    Remove ad segments from a media playlist and absolutise its URLs.

    :param content: raw playlist text
    :param base_url: URL the playlist was loaded from (relay URLs are unwrapped)
    :param mode: an AdFilterMode or its name
    :param custom_keywords: keywords whose presence on a segment line marks an ad
    :return: the filtered playlist text
    """
    if not content:
        return ''

    mode = AdFilterMode.parse(mode)
    keywords = [k for k in custom_keywords if k]
    base_path, origin = base_locations(base_url)

    filtering = mode != AdFilterMode.OFF
    has_keyword_match = filtering and any(k in content for k in keywords)
    has_cue_tag = filtering and (CUE_OUT in content or CUE_IN in content)

    lines = split_lines(content)

    ad_lines = set()
    if not has_cue_tag and mode.uses_heuristics:
        ad_lines = find_ad_line_indices(lines, mode, keywords)

    processed = []
    inside_cue_ad_block = False
    i = 0
    while i < len(lines):
        line = lines[i]
        trimmed = line.strip()
        i += 1

        if i - 1 in ad_lines:
            continue

        if filtering and trimmed.startswith(CUE_OUT):
            inside_cue_ad_block = True
            if processed and processed[-1].strip() == DISCONTINUITY:
                processed.pop()
            continue

        if filtering and trimmed.startswith(CUE_IN):
            inside_cue_ad_block = False
            if i < len(lines) and lines[i].strip() == DISCONTINUITY:
                i += 1
            continue

        if inside_cue_ad_block:
            continue

        if has_keyword_match and trimmed and not trimmed.startswith('#') \
                and any(k in trimmed for k in keywords):
            logger.debug(f"Removing keyword ad segment: {trimmed}")
            _backtrack(processed)
            continue

        # Discontinuities stay unless a confirmed ad next to them is removed
        if trimmed == DISCONTINUITY:
            processed.append(line)
            continue

        if not trimmed or trimmed.startswith(ABSOLUTE_PREFIXES):
            processed.append(line)
            continue

        if trimmed.startswith('#'):
            processed.append(rewrite_uri_attributes(line, base_path, origin) if 'URI="' in trimmed else line)
            continue

        processed.append(absolutize(trimmed, base_path, origin))

    if len(processed) < len(lines):
        logger.debug(f"Ad filter ({mode.value}) removed {len(lines) - len(processed)} of {len(lines)} lines")

    return '\n'.join(processed)
