"""HTML player page served to web clients."""

from __future__ import annotations

from html import escape
from string import Template

from aiotubecast.util import STREAM_PATH

from .session import StreamSession

# Seconds between status polls; the page reloads once the title changes
REFRESH_INTERVAL_S = 10

_PAGE_TEMPLATE = Template(
    """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
<title>$page_title</title>
<style>
body { font-family: -apple-system, Helvetica, Arial, sans-serif; background: #121212;
       color: #eee; text-align: center; margin: 0; padding: 2em 1em; }
img.cover { width: 280px; max-width: 80vw; border-radius: 8px; }
h1 { font-size: 1.4em; margin: .8em 0 .2em; }
h2 { font-size: 1em; font-weight: normal; color: #aaa; margin: 0 0 1.2em; }
audio { width: 320px; max-width: 90vw; }
button { margin: 1em .4em; padding: .6em 1.4em; border: 0; border-radius: 4px;
         background: #333; color: #eee; font-size: 1em; }
</style>
</head>
<body>
$cover
<h1 id="title">$title</h1>
<h2 id="artist">$artist</h2>
<audio controls autoplay src="$stream_path"></audio>
<div>
<button onclick="control('/api/skip')">Skip</button>
<button onclick="control('/api/stop')">Stop</button>
</div>
<script>
const renderedTitle = $title_json;
function control(path) {
  fetch(path).catch(function () {});
}
setInterval(function () {
  fetch('/api/status')
    .then(function (response) { return response.json(); })
    .then(function (status) {
      if ((status.title || null) !== renderedTitle) { window.location.reload(); }
    })
    .catch(function () {});
}, $refresh_ms);
</script>
</body>
</html>
"""
)


def _js_string(value: str | None) -> str:
    """Encode a value as a JavaScript literal that is safe inside a script tag."""
    if value is None:
        return "null"
    escaped = (
        value.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("\n", "\\n")
        .replace("<", "\\u003c")
        .replace(">", "\\u003e")
    )
    return f'"{escaped}"'


def render_player_page(session: StreamSession) -> str:
    """Render the player page for a snapshot of the stream session."""
    title = session.title or "Nothing playing"
    cover = (
        f'<img class="cover" src="{escape(session.thumbnail_url)}" alt="Cover">'
        if session.thumbnail_url
        else ""
    )
    return _PAGE_TEMPLATE.substitute(
        page_title=escape(title),
        title=escape(title),
        artist=escape(session.artist or ""),
        cover=cover,
        stream_path=STREAM_PATH,
        title_json=_js_string(session.title),
        refresh_ms=REFRESH_INTERVAL_S * 1000,
    )
