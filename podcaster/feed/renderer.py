"""RSS 2.0 rendering with iTunes and Podcasting 2.0 tags."""

import re
from dataclasses import dataclass
from datetime import UTC, datetime
from email.utils import format_datetime
from xml.etree import ElementTree as ET

from podcaster.models.episode import Episode

ITUNES_NS = "http://www.itunes.com/dtds/podcast-1.0.dtd"
PODCAST_NS = "https://podcastindex.org/namespace/1.0"
ATOM_NS = "http://www.w3.org/2005/Atom"

ET.register_namespace("itunes", ITUNES_NS)
ET.register_namespace("podcast", PODCAST_NS)
ET.register_namespace("atom", ATOM_NS)

GENERATOR = "Podcaster"

_BETWEEN_TAGS = re.compile(rb">\s+<")


@dataclass(frozen=True)
class ChannelInfo:
    """Channel-level metadata of one feed."""

    title: str
    description: str
    link: str
    language: str = "en-us"
    author: str | None = None
    image_url: str | None = None
    self_url: str | None = None


def _itunes(tag: str) -> str:
    return f"{{{ITUNES_NS}}}{tag}"


def _podcast(tag: str) -> str:
    return f"{{{PODCAST_NS}}}{tag}"


def _text(parent: ET.Element, tag: str, value: str) -> ET.Element:
    element = ET.SubElement(parent, tag)
    element.text = value
    return element


def _rfc822(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return format_datetime(value.astimezone(UTC), usegmt=True)


def order_episodes(episodes: list[Episode], sort_order: str = "newest") -> list[Episode]:
    """Sort by publication time, ties broken by id so output is stable."""
    newest_first = sort_order != "oldest"
    return sorted(
        episodes,
        key=lambda ep: (ep.published_at, ep.id),
        reverse=newest_first,
    )


def render_feed(
    channel: ChannelInfo,
    episodes: list[Episode],
    *,
    include_chapters: bool = False,
    include_transcript: bool = False,
) -> bytes:
    """Render ``episodes`` in the given order as an RSS document.

    ``lastBuildDate`` is the newest publication time rather than the wall
    clock, so identical inputs always produce identical bytes.
    """
    rss = ET.Element("rss", {"version": "2.0"})
    ch = ET.SubElement(rss, "channel")
    _text(ch, "title", channel.title)
    _text(ch, "description", channel.description)
    _text(ch, "link", channel.link)
    _text(ch, "language", channel.language)
    _text(ch, "generator", GENERATOR)
    if episodes:
        latest = max(ep.published_at for ep in episodes)
        _text(ch, "lastBuildDate", _rfc822(latest))
    if channel.self_url:
        ET.SubElement(
            ch,
            f"{{{ATOM_NS}}}link",
            {"href": channel.self_url, "rel": "self", "type": "application/rss+xml"},
        )
    if channel.author:
        _text(ch, _itunes("author"), channel.author)
    if channel.image_url:
        ET.SubElement(ch, _itunes("image"), {"href": channel.image_url})
    _text(ch, _itunes("explicit"), "false")

    for episode in episodes:
        _render_item(ch, episode, include_chapters, include_transcript)

    ET.indent(rss, space="  ")
    return ET.tostring(rss, encoding="utf-8", xml_declaration=True)


def _render_item(
    channel: ET.Element,
    episode: Episode,
    include_chapters: bool,
    include_transcript: bool,
) -> None:
    item = ET.SubElement(channel, "item")
    _text(item, "title", episode.title)
    _text(item, "description", episode.description)
    _text(item, "link", episode.audio_url)
    guid = _text(item, "guid", episode.guid)
    guid.set("isPermaLink", "false")
    _text(item, "pubDate", _rfc822(episode.published_at))
    ET.SubElement(
        item,
        "enclosure",
        {
            "url": episode.audio_url,
            "type": episode.audio_mime_type,
            "length": str(episode.enclosure_length),
        },
    )
    _text(item, _itunes("duration"), episode.formatted_duration)
    if episode.author:
        _text(item, _itunes("author"), episode.author)

    if include_chapters and episode.chapters_url:
        ET.SubElement(
            item,
            _podcast("chapters"),
            {"url": episode.chapters_url, "type": "application/json+chapters"},
        )
    if include_transcript and episode.transcript_url:
        ET.SubElement(
            item,
            _podcast("transcript"),
            {"url": episode.transcript_url, "type": "text/plain"},
        )


def compact(content: bytes) -> bytes:
    """Drop whitespace between tags."""
    return _BETWEEN_TAGS.sub(b"><", content).strip()
