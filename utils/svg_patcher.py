import logging
import re
from collections import namedtuple
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

log = logging.getLogger("mkdocs.hooks")

# ---------------------------------------------------------------------------
# PlantUML SVG reference patcher
# ---------------------------------------------------------------------------
#
# PlantUML cannot resolve cross-document references itself.  A diagram link
# written as [[\ref Some Page]] comes out of the renderer as
#
#   <a href="\ref" xlink:href="\ref" ...><text ...>Some Page</text></a>
#
# i.e. the link target only survives as the caption.  This module finds each
# such anchor, reads the caption back, resolves it through a resolver and
# rewrites the opening tag in place:
#
#   resolved   -> href="<prefix><file>.html#<anchor>"
#   unresolved -> href="#" plus an onclick that posts
#                 {type:'unresolved-ref', name:'...'} to the parent window
#
# The scan is textual (no XML parser): anchors are delimited with plain
# substring search, which assumes <a> elements never nest.
# ---------------------------------------------------------------------------

# Both spellings PlantUML may emit for the same link, plain first
BARE_REF_ATTRIBUTES = ("href", "xlink:href")

DEFAULT_HTML_EXTENSION = ".html"

# First caption inside the anchor; text content must not contain markup
TEXT_CAPTION_RE = re.compile(r"<text[^>]*>([^<]+)</text>")

UNRESOLVED_ONCLICK = (
    "window.parent.postMessage({{type:'unresolved-ref',name:'{name}'}},'*');"
    "return false;"
)

AnchorSpan = namedtuple("AnchorSpan", ["start", "open_end", "close"])
AnchorSpan.__doc__ = """Offsets of one <a> element: tag start, closing '>' of the
opening tag (inclusive) and the position of the matching '</a>'."""


def bare_ref(key):
    return f'{key}="\\ref"'


def has_bare_refs(content):
    """Cheap gate: is there anything to patch at all?"""
    return any(bare_ref(key) in content for key in BARE_REF_ATTRIBUTES)


def find_bare_ref(content, start=0):
    """
    Return the offset of the leftmost placeholder at or after `start`, or -1.

    "href=" is a suffix of "xlink:href=", so a namespaced placeholder is
    also found by the plain search, six characters later.  Position alone
    decides, and an exact tie goes to the plain spelling.
    """
    best = -1
    for key in BARE_REF_ATTRIBUTES:
        pos = content.find(bare_ref(key), start)
        if pos != -1 and (best == -1 or pos < best):
            best = pos
    return best


def find_anchor(content, ref_pos):
    """
    Delimit the <a> element enclosing the placeholder at `ref_pos`.

    Returns an AnchorSpan, or None when the anchor cannot be delimited:
    no preceding "<a", no following "</a>", an opening tag whose '>'
    is not before the close tag, or a placeholder outside the opening tag.
    """
    start = content.rfind("<a", 0, ref_pos + 1)
    if start == -1:
        return None

    close = content.find("</a>", ref_pos)
    if close == -1:
        return None

    open_end = content.find(">", start)
    if open_end == -1 or open_end >= close:
        return None

    # Rewriting only touches the opening tag; a placeholder past it would
    # be found again after the rewrite
    if open_end < ref_pos:
        return None

    return AnchorSpan(start, open_end, close)


def extract_ref_name(anchor_content):
    """Return the stripped text of the first <text> caption, or ""."""
    match = TEXT_CAPTION_RE.search(anchor_content)
    if match:
        return match.group(1).strip()
    return ""


def escape_js_string(value):
    """Escape for a single-quoted JavaScript string literal."""
    # Backslashes first, or the ones added for quotes get doubled
    return value.replace("\\", "\\\\").replace("'", "\\'")


def unresolved_onclick(name):
    return UNRESOLVED_ONCLICK.format(name=escape_js_string(name))


def rewrite_opening_tag(tag, url, name=""):
    """
    Rewrite every placeholder attribute in one opening tag.

    With a URL each placeholder becomes key="URL" (the URL is inserted
    verbatim).  Without one each becomes key="#" and a single onclick
    handler carrying `name` is added before the tag's final '>'.
    """
    target = url or "#"
    new_tag = tag
    for key in BARE_REF_ATTRIBUTES:
        if bare_ref(key) in tag:
            new_tag = _replace_attribute(new_tag, key, target)

    if not url:
        closing = new_tag.rfind(">")
        if closing != -1:
            onclick = f' onclick="{unresolved_onclick(name)}"'
            new_tag = new_tag[:closing] + onclick + new_tag[closing:]

    return new_tag


def _replace_attribute(tag, key, value):
    # The plain spelling must not eat the tail of the namespaced one
    pattern = re.compile(r"(?<!:)" + re.escape(bare_ref(key)))
    return pattern.sub(lambda m: f'{key}="{value}"', tag)


def patch_bare_refs(content, resolve):
    """
    Replace every placeholder anchor in `content`.

    `resolve` maps a reference name to a URL, or to None/"" when the name
    cannot be resolved.  Returns (patched_content, names) where `names`
    lists (name, url_or_None) for every rewritten anchor in order.
    """
    result = content
    rewritten = []
    search_start = 0

    while True:
        ref_pos = find_bare_ref(result, search_start)
        if ref_pos == -1:
            break

        span = find_anchor(result, ref_pos)
        if span is None:
            log.debug(f"[svg-ref] Skipping unterminated anchor at offset {ref_pos}")
            search_start = ref_pos + 1
            continue

        opening_tag = result[span.start:span.open_end + 1]
        anchor_content = result[span.open_end + 1:span.close]

        name = extract_ref_name(anchor_content)
        if not name:
            log.debug("[svg-ref] Could not extract ref name from anchor content")
            search_start = ref_pos + 1
            continue

        url = resolve(name) or None
        new_tag = rewrite_opening_tag(opening_tag, url, name)

        if url:
            log.debug(f"[svg-ref] Replaced ref '{name}' with URL '{url}'")
        else:
            log.debug(f"[svg-ref] Ref '{name}' unresolved, added onclick handler")

        result = result[:span.start] + new_tag + result[span.open_end + 1:]
        rewritten.append((name, url))

        search_start = span.start + len(new_tag)

    return result, rewritten


# ---------------------------------------------------------------------------
# URL construction
# ---------------------------------------------------------------------------


@dataclass
class RefDescriptor:
    """What a resolver knows about one reference name.

    file:   output path of the target page, extension optional
    anchor: in-page anchor without the leading '#'
    ref:    name of the external project the target lives in, "" if local
    """

    file: str = ""
    anchor: str = ""
    ref: str = ""

    @property
    def is_resolved(self):
        return bool(self.file or self.anchor)

    @property
    def is_external(self):
        return bool(self.ref)


def external_ref(rel_path, ref, destinations=None):
    """
    Return the prefix for links into project `ref`.

    Local links (empty `ref`) are relative to the site root, so the prefix is
    just `rel_path`.  External projects use their configured destination;
    a destination starting with '.' is itself relative to the site root and
    gets `rel_path` prepended.  Unknown projects yield "".
    """
    if not ref:
        return rel_path

    dest = (destinations or {}).get(ref)
    if not dest:
        return ""

    if rel_path and dest.startswith("."):
        dest = rel_path + dest
    if not dest.endswith("/"):
        dest += "/"
    return dest


def add_html_extension_if_missing(name, extension=DEFAULT_HTML_EXTENSION):
    if not name or not extension or name.endswith("/"):
        return name
    if PurePosixPath(name).suffix:
        return name
    return name + extension


def relative_path_to_root(dest_path):
    """Prefix leading from the directory of `dest_path` back to the site root."""
    depth = len(PurePosixPath(dest_path).parent.parts)
    return "../" * depth


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


class PlantumlSvgPatcher:
    """Patches the bare \\ref links of one SVG file in place."""

    def __init__(self, svg_file, rel_path, context, resolver,
                 html_extension=DEFAULT_HTML_EXTENSION, destinations=None):
        self.svg_file = Path(svg_file)
        self.rel_path = rel_path
        self.context = context
        self.resolver = resolver
        self.html_extension = html_extension
        self.destinations = destinations or {}

        self.patched = 0
        self.unresolved = []

    def run(self):
        """
        Read, patch and write back the SVG file.

        Returns False when the file cannot be read or written.  A file with
        no bare refs is left untouched and counts as success.
        """
        log.debug(f"[svg-ref] Patching file: {self.svg_file}")

        # Bytes that are not UTF-8 (latin-1 captions etc.) pass through as-is
        try:
            content = self.svg_file.read_text(encoding="utf-8", errors="surrogateescape")
        except OSError as exc:
            log.error(f"[svg-ref] Problem opening file {self.svg_file} for patching: {exc}")
            return False

        if not has_bare_refs(content):
            log.debug(f"[svg-ref] No bare refs found in {self.svg_file}")
            return True

        patched, rewritten = patch_bare_refs(content, self.resolve_ref_to_url)
        self.patched = len(rewritten)
        self.unresolved = [name for name, url in rewritten if not url]

        try:
            self.svg_file.write_text(patched, encoding="utf-8", errors="surrogateescape")
        except OSError as exc:
            log.error(f"[svg-ref] Problem opening file {self.svg_file} for writing: {exc}")
            return False

        for name in self.unresolved:
            log.warning(f"[svg-ref] {self.svg_file}: unresolved reference '{name}'")

        log.debug(f"[svg-ref] Successfully patched {self.svg_file}")
        return True

    def resolve_ref_to_url(self, name):
        """Resolve `name` through the resolver; None when unresolved."""
        descriptor = self.resolver.resolve_ref(name, self.context, self.rel_path)
        if descriptor is None or not descriptor.is_resolved:
            log.debug(f"[svg-ref] Ref '{name}' unresolved")
            return None

        url = external_ref(self.rel_path, descriptor.ref, self.destinations)
        if descriptor.file:
            url += add_html_extension_if_missing(descriptor.file, self.html_extension)
        if descriptor.anchor:
            url += f"#{descriptor.anchor}"
        return url
