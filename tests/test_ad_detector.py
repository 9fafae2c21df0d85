from unittest.mock import patch

import pytest

from m3u8_ad_detector import (
    AdFilterMode, Block, EMPTY_PATTERN, Segment, Thresholds,
    extract_filename, extract_path_prefix, find_ad_line_indices, find_common_prefix,
    learn_main_pattern, parse_blocks, score_block, should_filter_block,
    split_lines, unwrap_relay_url,
)


def make_playlist(*blocks):
    """Build playlist text from lists of segment URLs, one list per block."""
    lines = ['#EXTM3U', '#EXT-X-TARGETDURATION:10']
    for n, urls in enumerate(blocks):
        if n:
            lines.append('#EXT-X-DISCONTINUITY')
        for url in urls:
            lines.append('#EXTINF:10.0,')
            lines.append(url)
    lines.append('#EXT-X-ENDLIST')
    return '\n'.join(lines)


MAIN = [f'https://cdn.example/a/b/hls/seg{i}.ts' for i in range(10)]


class TestParseBlocks:
    def test_single_block_without_discontinuity(self):
        blocks = parse_blocks(split_lines(make_playlist(MAIN)))
        assert len(blocks) == 1
        assert [s.url for s in blocks[0].segments] == MAIN
        assert blocks[0].segments[0].line_index == 3
        assert blocks[0].segments[0].duration == 10.0

    def test_discontinuity_splits_blocks(self):
        blocks = parse_blocks(split_lines(make_playlist(MAIN, ['/ads/x.ts'])))
        assert [len(b.segments) for b in blocks] == [10, 1]
        assert blocks[1].segments[0].url == '/ads/x.ts'

    def test_empty_blocks_are_not_emitted(self):
        text = '#EXTM3U\n#EXT-X-DISCONTINUITY\n#EXT-X-DISCONTINUITY\n#EXTINF:4,\na.ts\n'
        blocks = parse_blocks(split_lines(text))
        assert len(blocks) == 1
        assert blocks[0].start_line_index == 3

    def test_malformed_duration_reads_as_zero(self):
        blocks = parse_blocks(split_lines('#EXTINF:1.2.3,\na.ts\n#EXTINF:abc,\nb.ts'))
        assert [s.duration for s in blocks[0].segments] == [0.0, 0.0]

    def test_extinf_without_url_is_skipped(self):
        blocks = parse_blocks(split_lines('#EXTINF:4,\n#EXT-X-ENDLIST'))
        assert blocks == []

    def test_cue_tag_marks_block(self):
        text = '#EXTINF:4,\na.ts\n#EXT-X-DISCONTINUITY\n#EXT-X-CUE-OUT:30\n#EXTINF:4,\nad.ts\n#EXT-X-CUE-IN'
        blocks = parse_blocks(split_lines(text))
        assert [b.has_cue_tag for b in blocks] == [False, True]

    def test_segments_partition_all_extinf_lines(self):
        text = make_playlist(MAIN[:3], MAIN[3:5], MAIN[5:])
        blocks = parse_blocks(split_lines(text))
        urls = [s.url for b in blocks for s in b.segments]
        assert urls == MAIN


class TestUrlHelpers:
    def test_unwrap_relay_url(self):
        wrapped = '/api/iptv/stream?ua=x&url=https%3A%2F%2Fcdn.example%2Fa%2Fseg.ts'
        assert unwrap_relay_url(wrapped) == 'https://cdn.example/a/seg.ts'

    def test_unwrap_leaves_other_urls(self):
        url = 'https://cdn.example/play?url=abc'
        assert unwrap_relay_url(url) == url

    def test_filename_and_path_prefix(self):
        url = 'https://cdn.example/20230907/73PW/1392kb/hls/gFE6.ts?token=1'
        assert extract_filename(url) == 'gFE6.ts'
        assert extract_path_prefix(url) == '/20230907/73PW/1392kb/hls/'

    def test_relative_path_prefix(self):
        assert extract_path_prefix('seg1.ts') == ''
        assert extract_path_prefix('/ads/x.ts') == '/ads/'

    @pytest.mark.parametrize('strings, expected', [
        (['seg001.ts', 'seg002.ts', 'seg010.ts'], 'seg0'),
        (['abc'], ''),
        (['same', 'same'], 'same'),
        (['a1', 'b1'], ''),
    ])
    def test_find_common_prefix(self, strings, expected):
        assert find_common_prefix(strings) == expected


class TestLearnMainPattern:
    def test_largest_block_wins(self):
        blocks = parse_blocks(split_lines(make_playlist(['/x/ad1.ts', '/x/ad2.ts'], MAIN)))
        pattern = learn_main_pattern(blocks)
        assert pattern.path_prefix == '/a/b/hls/'
        assert pattern.common_prefix == 'seg'
        assert pattern.filename_regex.match('seg42.ts')
        assert pattern.avg_duration == 10.0

    def test_ties_go_to_first_block(self):
        blocks = parse_blocks(split_lines(make_playlist(['/first/a1.ts'], ['/second/b1.ts'])))
        assert learn_main_pattern(blocks).path_prefix == '/first/'

    def test_short_prefix_gives_no_regex(self):
        blocks = parse_blocks(split_lines(make_playlist(['/v/s1.ts', '/v/s2.ts'])))
        pattern = learn_main_pattern(blocks)
        assert pattern.common_prefix == 's'
        assert pattern.filename_regex is None

    def test_relay_wrapped_segments_are_unwrapped(self):
        urls = [f'/api/iptv/stream?url=https%3A%2F%2Fcdn.example%2Fa%2Fhls%2Fpart{i}.ts' for i in range(3)]
        pattern = learn_main_pattern(parse_blocks(split_lines(make_playlist(urls))))
        assert pattern.path_prefix == '/a/hls/'
        assert pattern.common_prefix == 'part'

    def test_no_segments_gives_neutral_pattern(self):
        pattern = learn_main_pattern([])
        assert pattern == EMPTY_PATTERN
        block = Block((Segment('/ads/x.ts', 5.0, 1),))
        assert score_block(block, pattern) == 0.0


class TestScoreBlock:
    def setup_method(self):
        self.pattern = learn_main_pattern(parse_blocks(split_lines(make_playlist(MAIN))))

    def block(self, *urls):
        return Block(tuple(Segment(u, 10.0, i) for i, u in enumerate(urls)))

    def test_main_content_scores_zero(self):
        assert score_block(self.block(*MAIN), self.pattern) == 0.0

    def test_cue_tag_short_circuits(self):
        block = Block((Segment('/ads/advert.ts', 10.0, 1),), has_cue_tag=True)
        assert score_block(block, self.pattern) == 10.0

    def test_different_directory_and_filename(self):
        assert score_block(self.block('https://cdn.example/ads/x.ts'), self.pattern) == 6.5

    def test_keyword_counted_once_per_segment(self):
        url = 'https://cdn.example/a/b/hls/seg-advert-preroll.ts'
        assert score_block(self.block(url), self.pattern) == 2.5
        assert score_block(self.block(url, url), self.pattern) == 5.0

    def test_short_custom_keywords_are_ignored(self):
        url = 'https://cdn.example/a/b/hls/segxy.ts'
        assert score_block(self.block(url), self.pattern, ['xy']) == 0.0
        assert score_block(self.block(url), self.pattern, ['SEGXY']) == 2.5

    def test_partial_directory_mismatch_does_not_count(self):
        block = self.block('https://cdn.example/a/b/hls/seg1.ts', 'https://cdn.example/other/seg2.ts')
        assert score_block(block, self.pattern) == 0.0


class TestThresholds:
    @pytest.mark.parametrize('score', [0.0, 2.9, 3.0, 4.0, 4.9, 5.0, 6.5, 10.0])
    def test_aggressive_filters_whenever_heuristic_does(self, score):
        if should_filter_block(score, Thresholds.HIGH):
            assert should_filter_block(score, Thresholds.LOW)

    def test_for_mode(self):
        assert Thresholds.for_mode(AdFilterMode.AGGRESSIVE) == 3.0
        assert Thresholds.for_mode(AdFilterMode.HEURISTIC) == 5.0

    def test_mode_parse_falls_back_to_heuristic(self):
        assert AdFilterMode.parse('Aggressive') is AdFilterMode.AGGRESSIVE
        assert AdFilterMode.parse('bogus') is AdFilterMode.HEURISTIC


class TestFindAdLineIndices:
    def test_marks_ad_block_and_its_extinf(self):
        lines = split_lines(make_playlist(MAIN, ['/ads/x.ts']))
        ad_lines = find_ad_line_indices(lines, AdFilterMode.HEURISTIC)
        index = lines.index('/ads/x.ts')
        assert ad_lines == {index, index - 1}

    def test_keyword_mode_runs_no_heuristics(self):
        lines = split_lines(make_playlist(MAIN, ['/ads/x.ts']))
        assert find_ad_line_indices(lines, AdFilterMode.KEYWORD) == set()

    def test_aggressive_takes_whole_block_at_lower_score(self):
        # Same directory, foreign filenames, one keyword: block scores 1.5 + 2.5 = 4.0
        ad = 'https://cdn.example/a/b/hls/commercial.ts'
        filler = 'https://cdn.example/a/b/hls/x2.ts'
        lines = split_lines(make_playlist(MAIN, [ad, filler]))
        ad_index, filler_index = lines.index(ad), lines.index(filler)

        # Only the keyword segment reaches the lone-segment threshold
        assert find_ad_line_indices(lines, AdFilterMode.HEURISTIC) == {ad_index, ad_index - 1}
        assert find_ad_line_indices(lines, AdFilterMode.AGGRESSIVE) == {
            ad_index, ad_index - 1, filler_index, filler_index - 1,
        }

    def test_lone_segment_inside_content_block(self):
        urls = MAIN[:5] + ['https://ads.example/spot/x.ts'] + MAIN[5:]
        lines = split_lines(make_playlist(urls))
        index = lines.index('https://ads.example/spot/x.ts')
        assert find_ad_line_indices(lines, AdFilterMode.HEURISTIC) == {index, index - 1}

    @patch('m3u8_ad_detector.score_block', side_effect=RuntimeError('bad block'))
    def test_scoring_failure_keeps_everything(self, mock_score):
        lines = split_lines(make_playlist(MAIN, ['/ads/x.ts']))
        assert find_ad_line_indices(lines, AdFilterMode.AGGRESSIVE) == set()
        assert mock_score.called
