# Add src to path first
import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

import pytest

from models import ChannelRecord, DEFAULT_GROUP
from playlist_parser import parse_playlist, parse_metadata_line, record_id


SAMPLE_PLAYLIST = """#EXTM3U x-tvg-url="http://example.com/epg.xml"
#EXTINF:-1 tvg-id="bbc1.uk" tvg-name="BBC One" tvg-logo="http://example.com/bbc1.png" group-title="UK",BBC One HD
http://example.com/live/bbc1.ts

#EXTINF:-1 tvg-id="cnn.us" group-title="News",CNN International
#EXTVLCOPT:http-user-agent=VLC/3.0
http://example.com/live/cnn.m3u8
#EXTINF:-1,Plain Channel
http://example.com/live/plain.ts
"""


class TestParsePlaylist:
    """Test playlist document parsing"""

    def test_parses_entries_in_source_order(self):
        channels = parse_playlist(SAMPLE_PLAYLIST)

        assert [c.title for c in channels] == ["BBC One HD", "CNN International", "Plain Channel"]
        assert [c.url for c in channels] == [
            "http://example.com/live/bbc1.ts",
            "http://example.com/live/cnn.m3u8",
            "http://example.com/live/plain.ts",
        ]

    def test_extracts_all_attributes(self):
        channel = parse_playlist(SAMPLE_PLAYLIST)[0]

        assert isinstance(channel, ChannelRecord)
        assert channel.tvg_id == "bbc1.uk"
        assert channel.tvg_name == "BBC One"
        assert channel.logo == "http://example.com/bbc1.png"
        assert channel.group == "UK"

    def test_comment_between_metadata_and_url_is_skipped(self):
        channel = parse_playlist(SAMPLE_PLAYLIST)[1]

        assert channel.url == "http://example.com/live/cnn.m3u8"
        assert channel.group == "News"

    def test_missing_attributes_use_defaults(self):
        channel = parse_playlist(SAMPLE_PLAYLIST)[2]

        assert channel.group == DEFAULT_GROUP == "Uncategorized"
        assert channel.logo == ""
        assert channel.tvg_id == ""
        assert channel.tvg_name == ""

    def test_attribute_extraction_is_independent(self):
        channels = parse_playlist('#EXTINF:-1 tvg-id="5",Title\nhttp://example.com/5.ts')

        assert len(channels) == 1
        channel = channels[0]
        assert channel.tvg_id == "5"
        assert channel.title == "Title"
        assert channel.group == "Uncategorized"
        assert channel.logo == ""

    def test_attribute_order_does_not_matter(self):
        document = (
            '#EXTINF:-1 group-title="Sports" tvg-logo="l.png" tvg-name="N" tvg-id="i",A\nhttp://a\n'
            '#EXTINF:-1 tvg-id="i" tvg-name="N" tvg-logo="l.png" group-title="Sports",A\nhttp://a\n'
        )
        first, second = parse_playlist(document)

        for channel in (first, second):
            assert (channel.group, channel.logo, channel.tvg_name, channel.tvg_id) == ("Sports", "l.png", "N", "i")

    def test_dangling_metadata_is_dropped(self):
        document = "#EXTINF:-1,Lost\n#EXTINF:-1,Found\nhttp://example.com/found.ts"
        channels = parse_playlist(document)

        assert len(channels) == 1
        assert channels[0].title == "Found"

    def test_dangling_metadata_at_end_of_input_is_dropped(self):
        document = "#EXTINF:-1,One\nhttp://example.com/1.ts\n#EXTINF:-1,Two"

        assert [c.title for c in parse_playlist(document)] == ["One"]

    def test_url_without_open_record_is_ignored(self):
        document = "http://example.com/orphan.ts\n#EXTINF:-1,One\nhttp://example.com/1.ts\nhttp://example.com/extra.ts"
        channels = parse_playlist(document)

        assert len(channels) == 1
        assert channels[0].url == "http://example.com/1.ts"

    def test_lines_before_first_metadata_produce_nothing(self):
        document = "#EXTM3U\nsome garbage\n#PLAYLIST:Test\n"

        assert parse_playlist(document) == []

    @pytest.mark.parametrize("document", ["", "\n\n   \n", "#EXTM3U\n# just a comment\n#EXTGRP:News"])
    def test_empty_or_comment_only_documents(self, document):
        assert parse_playlist(document) == []

    def test_lines_are_trimmed_and_blank_lines_ignored(self):
        document = "  #EXTINF:-1 , Spaced Title  \r\n\r\n   http://example.com/spaced.ts   \r\n"
        channels = parse_playlist(document)

        assert len(channels) == 1
        assert channels[0].title == "Spaced Title"
        assert channels[0].url == "http://example.com/spaced.ts"

    def test_title_is_text_after_last_comma(self):
        channels = parse_playlist('#EXTINF:-1 group-title="News, Weather",Channel 5\nhttp://example.com/5.ts')

        assert channels[0].title == "Channel 5"
        assert channels[0].group == "News, Weather"

    def test_metadata_without_comma_has_empty_title(self):
        channels = parse_playlist('#EXTINF:-1 tvg-id="x"\nhttp://example.com/x.ts')

        assert channels[0].title == ""
        assert channels[0].tvg_id == "x"

    def test_malformed_attribute_keeps_default(self):
        channels = parse_playlist('#EXTINF:-1 group-title=Movies tvg-logo="ok.png",Film\nhttp://example.com/f.mp4')

        assert channels[0].group == "Uncategorized"
        assert channels[0].logo == "ok.png"

    def test_attribute_values_are_verbatim(self):
        channels = parse_playlist('#EXTINF:-1 tvg-name="  A &amp; B \\x ",T\nhttp://example.com/t.ts')

        assert channels[0].tvg_name == "  A &amp; B \\x "

    def test_url_and_title_are_reported_unchanged(self):
        url = "rtmp://example.com:1935/live/stream?token=a%20b&x=1#frag"
        title = "Ünïcödé Title (HD) | 24/7"
        channels = parse_playlist(f"#EXTINF:-1,{title}\n{url}")

        assert channels[0].url == url
        assert channels[0].title == title

    def test_every_record_has_a_url(self):
        document = "\n".join([
            "#EXTINF:-1,A", "#EXTINF:-1,B", "http://b", "http://orphan",
            "#EXTINF:-1,C", "# comment", "http://c", "#EXTINF:-1,D",
        ])
        channels = parse_playlist(document)

        assert [c.title for c in channels] == ["B", "C"]
        assert all(c.url for c in channels)

    def test_none_document_is_a_contract_violation(self):
        with pytest.raises(TypeError):
            parse_playlist(None)

    def test_serializes_with_camel_case_keys(self):
        channel = parse_playlist(SAMPLE_PLAYLIST)[0]
        data = channel.model_dump(by_alias=True)

        assert data["tvgId"] == "bbc1.uk"
        assert data["tvgName"] == "BBC One"
        assert set(data) == {"id", "title", "group", "logo", "url", "tvgId", "tvgName"}


class TestRecordIds:
    """Record ids are content hashes, unique within one parse"""

    def test_ids_are_stable_across_parses(self):
        first = [c.id for c in parse_playlist(SAMPLE_PLAYLIST)]
        second = [c.id for c in parse_playlist(SAMPLE_PLAYLIST)]

        assert first == second

    def test_ids_are_unique_within_a_parse(self):
        document = "#EXTINF:-1,Same\nhttp://same\n" * 3
        ids = [c.id for c in parse_playlist(document)]

        assert len(ids) == 3
        assert len(set(ids)) == 3
        assert ids[1] == f"{ids[0]}-2"
        assert ids[2] == f"{ids[0]}-3"

    def test_id_depends_on_content(self):
        a = parse_playlist("#EXTINF:-1,A\nhttp://a")[0]
        b = parse_playlist("#EXTINF:-1,A\nhttp://b")[0]

        assert a.id != b.id
        assert len(a.id) == 16

    def test_record_id_matches_metadata_fields(self):
        fields = parse_metadata_line('#EXTINF:-1 tvg-id="x",X')
        fields["url"] = "http://x"

        assert parse_playlist('#EXTINF:-1 tvg-id="x",X\nhttp://x')[0].id == record_id(fields)
