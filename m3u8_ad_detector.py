"""
Heuristic ad detection for HLS media playlists.

A playlist is cut into blocks at every #EXT-X-DISCONTINUITY. The largest
block is taken as the main content and its segments give a fingerprint
(filename prefix, directory path). Every other block is scored against
that fingerprint; high scores mean "probably an ad".
"""
import re
import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Pattern, Tuple
from urllib.parse import urlparse, parse_qs

logger = logging.getLogger(__name__)

# Ad-related path keywords for scoring
AD_PATH_KEYWORDS = (
    'advert', 'preroll', 'midroll', 'postroll',
    'dai', 'vast', 'ima', 'adjump', 'commercial', 'sponsor',
)

# Paths of relay endpoints whose ?url= parameter holds the real target
RELAY_PATHS = ('/api/iptv/stream', '/api/proxy')

DISCONTINUITY = '#EXT-X-DISCONTINUITY'
CUE_OUT = '#EXT-X-CUE-OUT'
CUE_IN = '#EXT-X-CUE-IN'
EXTINF = '#EXTINF:'

CUE_TAG_SCORE = 10.0
KEYWORD_SCORE = 2.5
FILENAME_MISMATCH_SCORE = 1.5
PATH_MISMATCH_SCORE = 5.0


class AdFilterMode(str, Enum):
    OFF = 'off'
    KEYWORD = 'keyword'
    HEURISTIC = 'heuristic'
    AGGRESSIVE = 'aggressive'

    @classmethod
    def parse(cls, value, default=None):
        """Return the mode named by value, or default (heuristic) when unknown."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.HEURISTIC if default is None else default

    @property
    def uses_heuristics(self):
        return self in (AdFilterMode.HEURISTIC, AdFilterMode.AGGRESSIVE)


class Thresholds:
    HIGH = 5.0     # heuristic mode: definitely an ad
    LOW = 3.0      # aggressive mode: possibly an ad
    SEGMENT = 4.0  # a lone segment re-checked outside its block

    @classmethod
    def for_mode(cls, mode):
        return cls.LOW if mode == AdFilterMode.AGGRESSIVE else cls.HIGH


@dataclass(frozen=True)
class Segment:
    url: str
    duration: float
    line_index: int


@dataclass(frozen=True)
class Block:
    segments: Tuple[Segment, ...] = ()
    start_line_index: int = 0
    end_line_index: int = 0
    has_cue_tag: bool = False


@dataclass(frozen=True)
class MainPattern:
    filename_regex: Optional[Pattern] = None
    avg_duration: float = 0.0
    common_prefix: str = ''
    # None when nothing was learned; path scoring is then skipped
    path_prefix: Optional[str] = None


EMPTY_PATTERN = MainPattern()


def split_lines(content):
    return re.split(r'\r?\n', content or '')


def parse_duration(line):
    """Duration of an #EXTINF line; malformed values read as 0."""
    match = re.match(r'#EXTINF:([\d.]+)', line)
    if not match:
        return 0.0
    try:
        return float(match.group(1))
    except ValueError:
        return 0.0


def parse_blocks(lines: List[str]) -> List[Block]:
    """Group the segments of a playlist into blocks split at discontinuities."""
    blocks = []
    segments = []
    start = 0
    has_cue_tag = False

    for i, raw in enumerate(lines):
        line = raw.strip()

        if line.startswith(CUE_OUT) or line.startswith(CUE_IN):
            has_cue_tag = True

        if line == DISCONTINUITY:
            if segments:
                blocks.append(Block(tuple(segments), start, i - 1, has_cue_tag))
            segments = []
            start = i + 1
            has_cue_tag = False
            continue

        if line.startswith(EXTINF) and i + 1 < len(lines):
            url = lines[i + 1].strip()
            if url and not url.startswith('#'):
                segments.append(Segment(url, parse_duration(line), i + 1))

    if segments:
        blocks.append(Block(tuple(segments), start, len(lines) - 1, has_cue_tag))

    return blocks


def unwrap_relay_url(url):
    """Return the target of a relay URL (.../api/iptv/stream?url=...), else url unchanged."""
    if 'url=' not in url:
        return url
    parsed = urlparse(url)
    if not parsed.path.endswith(RELAY_PATHS):
        return url
    target = parse_qs(parsed.query).get('url')
    return target[0] if target else url


def _url_path(url):
    url = unwrap_relay_url(url)
    return urlparse(url).path if '://' in url else url


def extract_filename(url):
    return _url_path(url).split('/')[-1]


def extract_path_prefix(url):
    """Directory part of a URL path, up to and including the final '/'."""
    path = _url_path(url)
    return path[:path.rfind('/') + 1]


def find_common_prefix(strings):
    if len(strings) < 2:
        return ''
    first = strings[0]
    for i, char in enumerate(first):
        if any(len(s) <= i or s[i] != char for s in strings[1:]):
            return first[:i]
    return first


def learn_main_pattern(blocks: List[Block]) -> MainPattern:
    """Fingerprint the largest block, which is assumed to be the programme itself."""
    main_block = None
    for block in blocks:
        if block.segments and (main_block is None or len(block.segments) > len(main_block.segments)):
            main_block = block

    if main_block is None:
        return EMPTY_PATTERN

    filenames = [extract_filename(s.url) for s in main_block.segments]
    common_prefix = find_common_prefix(filenames)
    avg_duration = sum(s.duration for s in main_block.segments) / len(main_block.segments)

    # Shorter prefixes match nearly anything
    filename_regex = re.compile('^' + re.escape(common_prefix)) if len(common_prefix) >= 2 else None

    return MainPattern(
        filename_regex=filename_regex,
        avg_duration=avg_duration,
        common_prefix=common_prefix,
        path_prefix=extract_path_prefix(main_block.segments[0].url),
    )


def score_block(block: Block, main_pattern: MainPattern, extra_keywords=()) -> float:
    """
    Ad likelihood of a block; higher means more likely an ad.

    A cue tag makes the block a certain ad. Otherwise the score adds up
    keyword hits (once per segment), a filename that misses the learned
    prefix on every segment, and a directory that differs on every segment.
    """
    if block.has_cue_tag:
        return CUE_TAG_SCORE

    segments = block.segments
    if not segments:
        return 0.0

    keywords = [k.lower() for k in AD_PATH_KEYWORDS]
    keywords += [k.lower() for k in extra_keywords if len(k) > 2]

    score = 0.0
    for segment in segments:
        url_lower = segment.url.lower()
        if any(keyword in url_lower for keyword in keywords):
            score += KEYWORD_SCORE

    if main_pattern.filename_regex is not None:
        if all(not main_pattern.filename_regex.match(extract_filename(s.url)) for s in segments):
            score += FILENAME_MISMATCH_SCORE

    if main_pattern.path_prefix is not None:
        if all(extract_path_prefix(s.url) != main_pattern.path_prefix for s in segments):
            score += PATH_MISMATCH_SCORE

    return score


def should_filter_block(score, threshold=Thresholds.HIGH):
    return score >= threshold


def safe_score_block(block, main_pattern, extra_keywords=()):
    """score_block that treats any failure as "not an ad"."""
    try:
        return score_block(block, main_pattern, extra_keywords)
    except Exception as e:
        logger.warning(f"Scoring failed for block at line {block.start_line_index}, treating as content: {e}")
        return 0.0


def find_ad_line_indices(lines, mode, extra_keywords=()):
    """
    Heuristic pre-pass: indices of URL lines (and their #EXTINF lines)
    that belong to ad blocks or to lone ad segments.
    """
    mode = AdFilterMode.parse(mode)
    ad_lines = set()
    if not mode.uses_heuristics:
        return ad_lines

    blocks = parse_blocks(lines)
    if not blocks:
        return ad_lines

    main_pattern = learn_main_pattern(blocks)
    threshold = Thresholds.for_mode(mode)

    for block in blocks:
        score = safe_score_block(block, main_pattern, extra_keywords)
        if should_filter_block(score, threshold):
            logger.debug(f"Removing block of {len(block.segments)} segments at line {block.start_line_index} (score {score})")
            for segment in block.segments:
                ad_lines.update((segment.line_index, segment.line_index - 1))
            continue

        # Ads spliced in without a discontinuity hide inside content blocks
        for segment in block.segments:
            single = Block((segment,), segment.line_index - 1, segment.line_index, False)
            if should_filter_block(safe_score_block(single, main_pattern, extra_keywords), Thresholds.SEGMENT):
                logger.debug(f"Removing single segment {segment.url}")
                ad_lines.update((segment.line_index, segment.line_index - 1))

    return ad_lines
