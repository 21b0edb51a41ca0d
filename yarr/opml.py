"""Reading and writing OPML subscription lists."""

from __future__ import annotations

import html.entities
import io
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import BinaryIO, TextIO, Union

INDENT = "  "
NL = "\n"


class OPMLError(ValueError):
    """The document is not a readable OPML file."""


def _escape(text: str) -> str:
    return (
        text.replace("&", "&amp;")
        .replace("'", "&#39;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&#34;")
    )


@dataclass
class Feed:
    title: str = ""
    feed_url: str = ""
    site_url: str = ""

    def _outline(self, level: int) -> str:
        return (
            INDENT * level
            + f'<outline type="rss" text="{_escape(self.title)}" '
            f'xmlUrl="{_escape(self.feed_url)}" htmlUrl="{_escape(self.site_url)}"/>'
            + NL
        )


@dataclass
class Folder:
    title: str = ""
    folders: list["Folder"] = field(default_factory=list)
    feeds: list[Feed] = field(default_factory=list)

    def all_feeds(self) -> list[Feed]:
        """Feeds of this folder followed by those of all subfolders."""
        result = list(self.feeds)
        for sub in self.folders:
            result.extend(sub.all_feeds())
        return result

    def _outline(self, level: int) -> str:
        prefix = INDENT * level
        parts = []
        if level > 0:
            parts.append(f'{prefix}<outline text="{_escape(self.title)}">{NL}')
        parts.extend(sub._outline(level + 1) for sub in self.folders)
        parts.extend(feed._outline(level + 1) for feed in self.feeds)
        if level > 0:
            parts.append(f"{prefix}</outline>{NL}")
        return "".join(parts)

    def to_opml(self) -> str:
        """Render the folder as an OPML document."""
        return (
            '<?xml version="1.0" encoding="UTF-8"?>' + NL
            + '<opml version="1.1">' + NL
            + "<head><title>subscriptions</title></head>" + NL
            + "<body>" + NL
            + self._outline(0)
            + "</body>" + NL
            + "</opml>" + NL
        )


def _build_folder(title: str, outlines) -> Folder:
    folder = Folder(title=title)
    for node in outlines:
        feed_url = node.get("xmlUrl", "")
        if node.get("type", "") == "rss" or feed_url:
            folder.feeds.append(
                Feed(title=node.get("text", ""), feed_url=feed_url,
                     site_url=node.get("htmlUrl", ""))
            )
        else:
            sub_title = node.get("text", "") or node.get("title", "")
            folder.folders.append(_build_folder(sub_title, node.findall("outline")))
    return folder


def parse(source: Union[str, bytes, BinaryIO, TextIO]) -> Folder:
    """Parse an OPML document into its root folder."""
    if hasattr(source, "read"):
        source = source.read()
    data = source.lstrip() if isinstance(source, (str, bytes)) else source
    parser = ET.XMLParser()
    parser.entity.update(
        {name: chr(code) for name, code in html.entities.name2codepoint.items()}
    )
    try:
        if isinstance(data, str):
            parser.feed(data)
        else:
            parser.feed(bytes(data))
        root = parser.close()
    except ET.ParseError as exc:
        raise OPMLError(str(exc)) from exc
    if root.tag != "opml":
        raise OPMLError(f"expected element <opml>, got <{root.tag}>")
    outlines = [node for body in root.findall("body") for node in body.findall("outline")]
    return _build_folder("", outlines)


__all__ = ["Feed", "Folder", "OPMLError", "parse", "io"]