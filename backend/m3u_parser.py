"""
Minimal M3U8 playlist parsing and serialisation for VOD catalogs.

    #EXTM3U
    #EXTINF:-1 tvg-id="42" tvg-name="Dune" group-title="Action",Dune (2021)
    http://host/movie/user/pass/42.mp4
"""
import re
from dataclasses import dataclass, field
from typing import Optional

EXTM3U_HEADER = "#EXTM3U"
EXTINF_PREFIX = "#EXTINF:"

_ATTRIBUTE = re.compile(r'([\w-]+)="([^"]*)"')
_DURATION = re.compile(r"^(-?\d+(?:\.\d+)?)")


@dataclass
class M3UEntry:
    """One playlist item: EXTINF attributes, display title and URL."""
    title: str
    url: str
    duration: int = -1
    attributes: dict = field(default_factory=dict)

    @property
    def tvg_id(self) -> Optional[str]:
        return self.attributes.get("tvg-id") or None

    @property
    def tvg_name(self) -> Optional[str]:
        return self.attributes.get("tvg-name") or None

    @property
    def group_title(self) -> Optional[str]:
        return self.attributes.get("group-title") or None


def _split_title(body: str) -> tuple[str, str]:
    """Split the EXTINF body at the first comma that is not inside quotes."""
    in_quotes = False
    for index, char in enumerate(body):
        if char == '"':
            in_quotes = not in_quotes
        elif char == "," and not in_quotes:
            return body[:index], body[index + 1:]
    return body, ""


def parse_extinf(line: str) -> tuple[int, dict, str]:
    """Parse an ``#EXTINF:`` line into (duration, attributes, title)."""
    body = line.strip()[len(EXTINF_PREFIX):]
    head, title = _split_title(body)

    duration = -1
    match = _DURATION.match(head.strip())
    if match:
        duration = int(float(match.group(1)))

    attributes = {key: value for key, value in _ATTRIBUTE.findall(head)}
    return duration, attributes, title.strip()


def parse_m3u(content: str) -> list[M3UEntry]:
    """
    Parse playlist text. Each EXTINF line is paired with the next
    non-comment line; an EXTINF without a URL is dropped.
    """
    entries = []
    pending = None
    for raw_line in (content or "").splitlines():
        line = raw_line.strip()
        if not line:
            continue
        if line.startswith(EXTINF_PREFIX):
            pending = parse_extinf(line)
        elif line.startswith("#"):
            continue
        elif pending is not None:
            duration, attributes, title = pending
            entries.append(M3UEntry(title=title, url=line, duration=duration, attributes=attributes))
            pending = None
    return entries


def count_extinf(content: str) -> int:
    return (content or "").count(EXTINF_PREFIX)


def format_extinf(entry: M3UEntry) -> str:
    """Serialise the EXTINF line of an entry (attribute order preserved)."""
    attrs = " ".join(f'{key}="{value.replace(chr(34), chr(39))}"' for key, value in entry.attributes.items())
    head = f"{EXTINF_PREFIX}{entry.duration}"
    if attrs:
        head = f"{head} {attrs}"
    return f"{head},{entry.title}"


def format_m3u(entries: list[M3UEntry]) -> str:
    lines = [EXTM3U_HEADER]
    for entry in entries:
        lines.append(format_extinf(entry))
        lines.append(entry.url)
    return "\n".join(lines) + "\n"
