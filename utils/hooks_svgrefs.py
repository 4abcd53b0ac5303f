import logging
import os
import re
from pathlib import Path, PurePosixPath

from svg_patcher import (
    DEFAULT_HTML_EXTENSION,
    PlantumlSvgPatcher,
    RefDescriptor,
    relative_path_to_root,
)

log = logging.getLogger("mkdocs.hooks")

# ---------------------------------------------------------------------------
# \ref resolution for PlantUML diagrams
# ---------------------------------------------------------------------------
#
# Diagram links (inside a PlantUML source):
#   [[\ref page-name]]               -> page, resolved like a wiki-link
#   [[\ref subfolder/page-name]]     -> partial-path disambiguated resolve
#   [[\ref page-name#heading]]       -> page + heading anchor
#   [[\ref #heading]]                -> heading on the page embedding the SVG
#   [[\ref project:page-name]]       -> page in an external project
#                                       (extra.svg_refs.external_projects)
#
# PlantUML writes these out as href="\ref" with the name as the caption; the
# SVGs are patched in on_post_build once every page has been seen, so the
# page embedding a diagram is known and used as resolution context.
#
# Resolution order:
#   1. Exact path match (e.g. "guide/setup")
#   2. Stem match ("setup" matches "guide/setup.md", index.md pages are
#      registered under their folder name)
#   3. If ambiguous, ordered partial-path segments ("guide/setup")
#   4. If still ambiguous, the candidate closest to the embedding page
#   5. Otherwise unresolved: the link becomes inert and notifies the parent
#      window, and a build warning is emitted.
# ---------------------------------------------------------------------------

# Markdown images and HTML embeds that may pull in an SVG
_MD_IMAGE_RE = re.compile(r"!\[[^\]]*\]\((?P<url>[^)\s]+)[^)]*\)")
_HTML_EMBED_RE = re.compile(
    r"<(?:img|object|embed|iframe)\b[^>]*?\b(?:src|data)=[\"'](?P<url>[^\"']+)[\"']",
    re.IGNORECASE,
)

# "project:target" where project is a configured external project
_PROJECT_PREFIX_RE = re.compile(r"^(?P<project>[\w.-]+):(?!/)(?P<target>.*)$")


def _strip_code_fences(markdown):
    """
    Return list of (start, end) char ranges that are inside fenced code
    blocks or inline code, so embeds shown as code are not tracked.
    """
    ranges = []
    for m in re.finditer(
        r"^(?P<fence>`{3,}|~{3,})[^\n]*\n.*?^(?P=fence)\s*$",
        markdown,
        re.MULTILINE | re.DOTALL,
    ):
        ranges.append((m.start(), m.end()))
    for m in re.finditer(r"(?<!`)(`{1,2})(?!`)((?:(?!\1)[^\n])+)\1(?!`)", markdown):
        ranges.append((m.start(), m.end()))
    return ranges


def _inside_code(pos, code_ranges):
    return any(start <= pos < end for start, end in code_ranges)


def slugify(value):
    """Slugify a heading the same way markdown.extensions.toc does."""
    value = value.strip().lower()
    value = re.sub(r"[^\w\s-]", "", value)
    value = re.sub(r"[\s]+", "-", value)
    value = re.sub(r"[-]+", "-", value)
    return value


def extract_heading_slugs(markdown_text):
    """
    Extract heading slugs from markdown text using ATX heading syntax.
    Excludes headings inside fenced code blocks.
    """
    slugs = []
    in_fence = False
    fence_pattern = re.compile(r"^(`{3,}|~{3,})")

    for line in markdown_text.split("\n"):
        if fence_pattern.match(line.strip()):
            in_fence = not in_fence
            continue
        if in_fence:
            continue
        heading_match = re.match(r"^#{1,6}\s+(.+?)(?:\s*#*\s*)?$", line)
        if heading_match:
            text = heading_match.group(1).strip()
            text = re.sub(r"\*{1,2}(.+?)\*{1,2}", r"\1", text)
            text = re.sub(r"`(.+?)`", r"\1", text)
            text = re.sub(r"\[(.+?)\]\([^)]*\)", r"\1", text)
            slugs.append(slugify(text))

    return slugs


def _normalise_target(raw):
    """Lowercase, forward slashes, spaces to dashes, no .md suffix."""
    normalised = raw.strip().lower().replace("\\", "/")
    normalised = re.sub(r"\s+", "-", normalised)
    if normalised.endswith(".md"):
        normalised = normalised[:-3]
    return normalised


class RefEngine:
    """Page index, \\ref resolution and per-build patch bookkeeping."""

    def __init__(self):
        # Page indexes
        self.page_index_by_stem = {}
        self.page_index_by_path = {}

        # Heading slugs per page src_path, filled as pages are rendered
        self.heading_index = {}

        # SVG files to patch and the page each one is embedded in
        self.svg_files = {}
        self.svg_contexts = {}

        # Settings
        self.html_extension = DEFAULT_HTML_EXTENSION
        self.external_projects = {}
        self.strict = False

        # Patch report
        self.patched_files = []
        self.failed_files = []
        self.unresolved_report = []

    def configure(self, settings):
        """Apply the extra.svg_refs mapping from mkdocs.yml."""
        settings = settings or {}
        self.html_extension = settings.get("html_extension", DEFAULT_HTML_EXTENSION)
        self.external_projects = dict(settings.get("external_projects") or {})
        self.strict = bool(settings.get("strict", False))
        if os.getenv("CI") and os.getenv("DOCS_STRICT"):
            self.strict = True

    # ------------------------------------------------------------------
    # Index building
    # ------------------------------------------------------------------

    def build_indexes(self, files):
        """Build lookup structures from the MkDocs file list.

        index.md pages are registered under their **parent folder name** as
        the stem and under the folder path, so [[\\ref atlas]] resolves to
        atlas/index.md.  The bare stem "index" is never registered.

        SVG files are collected so on_post_build knows what to patch.
        """
        self.page_index_by_stem = {}
        self.page_index_by_path = {}
        self.heading_index = {}
        self.svg_files = {}
        self.svg_contexts = {}
        self.patched_files = []
        self.failed_files = []
        self.unresolved_report = []

        for f in files:
            src = f.src_path
            p = PurePosixPath(src)
            ext = p.suffix.lower()

            if ext == ".svg":
                self.svg_files[src] = f
                continue

            if ext != ".md":
                continue

            stem = p.stem.lower()
            path_no_ext = src.rsplit(".", 1)[0].lower()

            self.page_index_by_path[path_no_ext] = f

            if stem == "index":
                parent = p.parent
                if parent != PurePosixPath("."):
                    folder_name = parent.name.lower()
                    self.page_index_by_stem.setdefault(folder_name, []).append(f)
                    self.page_index_by_path[str(parent).lower()] = f
            else:
                self.page_index_by_stem.setdefault(stem, []).append(f)

    def cache_page_headings(self, src_path, markdown_text):
        self.heading_index[src_path] = extract_heading_slugs(markdown_text)

    def track_svg_embeds(self, markdown, page_src_path):
        """Remember `page_src_path` as the context of every SVG it embeds."""
        code_ranges = _strip_code_fences(markdown)
        matches = list(_MD_IMAGE_RE.finditer(markdown)) + list(_HTML_EMBED_RE.finditer(markdown))

        for match in matches:
            if _inside_code(match.start(), code_ranges):
                continue

            url = match.group("url").split("#", 1)[0].split("?", 1)[0]
            if url.startswith(("http://", "https://", "//", "data:")):
                continue
            if not url.lower().endswith(".svg"):
                continue

            target = self._find_svg_file(url, page_src_path)
            if target is None:
                continue
            # First page to embed a diagram wins
            self.svg_contexts.setdefault(target.src_path, page_src_path)

    def _find_svg_file(self, url_path, page_src_path):
        """Resolve a relative URL to an indexed SVG File object."""
        from posixpath import join as posix_join
        from posixpath import normpath

        if url_path.startswith("/"):
            resolved = url_path.lstrip("/")
        else:
            current_dir = str(PurePosixPath(page_src_path).parent)
            resolved = normpath(posix_join(current_dir, url_path))

        if resolved in self.svg_files:
            return self.svg_files[resolved]

        resolved_lower = resolved.lower()
        for src, f in self.svg_files.items():
            if src.lower() == resolved_lower:
                return f
        return None

    # ------------------------------------------------------------------
    # Disambiguation
    # ------------------------------------------------------------------

    @staticmethod
    def _page_effective_path(f):
        """Path used for disambiguation: folder for index.md, else path without extension."""
        p = PurePosixPath(f.src_path.lower())
        if p.stem == "index" and p.parent != PurePosixPath("."):
            return str(p.parent)
        return str(p.with_suffix(""))

    def _resolve_page(self, normalised, current_page_path):
        """Exact path -> stem lookup -> partial-path -> proximity.

        Returns (file_obj_or_None, warning_or_None).
        """
        parts = normalised.split("/")
        key = parts[-1]

        # --- 1. Exact full-path match ---
        if normalised in self.page_index_by_path:
            return self.page_index_by_path[normalised], None

        # --- 2. Stem lookup ---
        candidates = self.page_index_by_stem.get(key, [])

        if not candidates:
            return None, f"Reference target not found: {normalised}"

        if len(candidates) == 1 and len(parts) == 1:
            return candidates[0], None

        # --- 3. Partial-path matching for disambiguation ---
        if len(parts) > 1:
            hint_segments = parts[:-1]

            def _matches_hint(f):
                path_parts = self._page_effective_path(f).split("/")
                search_from = 0
                for seg in hint_segments:
                    try:
                        idx = path_parts.index(seg, search_from)
                        search_from = idx + 1
                    except ValueError:
                        return False
                return True

            matches = [f for f in candidates if _matches_hint(f)]
            if len(matches) == 1:
                return matches[0], None
            if len(matches) > 1:
                paths = ", ".join(m.src_path for m in matches)
                return None, (
                    f"Ambiguous reference {normalised} still matches "
                    f"{len(matches)} pages: {paths}. Add more path segments "
                    f"to disambiguate."
                )
            return None, f"Reference target not found: {normalised}"

        # --- 4. Proximity tie-breaking ---
        current_dir_parts = current_page_path.lower().split("/")[:-1]

        def _shared_prefix_len(f):
            f_parts = f.src_path.lower().split("/")[:-1]
            common = 0
            for a, b in zip(current_dir_parts, f_parts):
                if a != b:
                    break
                common += 1
            return common

        scored = sorted(candidates, key=_shared_prefix_len, reverse=True)
        best_score = _shared_prefix_len(scored[0])
        top_tier = [f for f in scored if _shared_prefix_len(f) == best_score]

        if len(top_tier) == 1:
            return top_tier[0], None

        paths = ", ".join(c.src_path for c in candidates)
        return None, (
            f"Ambiguous reference {normalised} matches {len(candidates)} pages: "
            f"{paths}. Use a partial path like folder/{normalised} to disambiguate."
        )

    # ------------------------------------------------------------------
    # Reference resolution
    # ------------------------------------------------------------------

    @staticmethod
    def _output_name(f):
        """Site-relative link to a page, without the .html extension.

        MkDocs' own `url` wins when present, so directory URLs stay in
        the "guide/setup/" form instead of pointing at index.html.
        """
        url = getattr(f, "url", "") or ""
        if url:
            if url.endswith(".html"):
                return url[:-5]
            return url if url != "." else "./"

        dest = getattr(f, "dest_path", "") or ""
        if dest:
            return dest[:-5] if dest.endswith(".html") else dest
        return str(PurePosixPath(f.src_path).with_suffix(""))

    def _page_for_context(self, context):
        if not context:
            return None
        return self.page_index_by_path.get(context.rsplit(".", 1)[0].lower())

    def validate_anchor(self, slug, target_src_path):
        """
        Return (is_valid, available_slugs).  Pages whose headings were never
        seen cannot be checked and count as valid.
        """
        slugs = self.heading_index.get(target_src_path, [])
        if not slug or not slugs:
            return True, []
        return slug in slugs, slugs

    def resolve_ref(self, name, context, rel_path):
        """
        Resolve a \\ref name seen in a diagram embedded in page `context`.

        Always returns a RefDescriptor; an empty one means unresolved.
        `rel_path` is accepted for the resolver interface but prefixes are
        applied by the patcher.
        """
        descriptor, warning = self._resolve(name, context)
        if warning:
            log.debug(f"[svg-ref] {context or '<no page>'}: {warning}")
            return RefDescriptor()
        return descriptor

    def _resolve(self, name, context):
        raw = name.strip()

        project = ""
        match = _PROJECT_PREFIX_RE.match(raw)
        if match and match.group("project") in self.external_projects:
            project = match.group("project")
            raw = match.group("target").strip()

        anchor = ""
        if "#" in raw:
            raw, anchor = raw.split("#", 1)
            raw = raw.strip()
            anchor = slugify(anchor)

        if project:
            if not raw and not anchor:
                return None, f"Empty reference into project {project}"
            return RefDescriptor(file=raw, anchor=anchor, ref=project), None

        # Bare anchor: heading on the page embedding the diagram
        if not raw:
            if not anchor:
                return None, "Empty reference"
            page = self._page_for_context(context)
            if page is None:
                return RefDescriptor(anchor=anchor), None
            return self._page_descriptor(page, anchor)

        page, warning = self._resolve_page(_normalise_target(raw), context or "")
        if warning:
            return None, warning
        return self._page_descriptor(page, anchor)

    def _page_descriptor(self, page, anchor):
        if anchor:
            is_valid, available = self.validate_anchor(anchor, page.src_path)
            if not is_valid:
                hint = ", ".join(available[:10])
                return None, f"Anchor #{anchor} not found on {page.src_path}. Available: {hint}"
        return RefDescriptor(file=self._output_name(page), anchor=anchor), None

    # ------------------------------------------------------------------
    # Patching
    # ------------------------------------------------------------------

    def patch_svg_files(self, site_dir):
        """Run the patcher over every indexed SVG copied into `site_dir`."""
        for src_path in sorted(self.svg_files):
            f = self.svg_files[src_path]
            dest = getattr(f, "dest_path", "") or src_path

            patcher = PlantumlSvgPatcher(
                Path(site_dir) / dest,
                relative_path_to_root(dest),
                self.svg_contexts.get(src_path, src_path),
                self,
                html_extension=self.html_extension,
                destinations=self.external_projects,
            )
            if not patcher.run():
                self.failed_files.append(dest)
                continue

            if patcher.patched:
                self.patched_files.append(dest)
            for ref_name in patcher.unresolved:
                self.unresolved_report.append(f"{dest}: {ref_name}")

    def report(self):
        """Log the build summary; returns True when the build should fail."""
        log.info(
            f"[svg-ref] Patched {len(self.patched_files)} of "
            f"{len(self.svg_files)} SVG file(s)"
        )
        if self.unresolved_report:
            log.warning("")
            log.warning(
                f"[svg-ref] Found {len(self.unresolved_report)} unresolved "
                f"diagram reference(s):"
            )
            for entry in self.unresolved_report:
                log.warning(f"  {entry}")
            log.warning("")
        if self.failed_files:
            log.error(f"[svg-ref] Could not patch {len(self.failed_files)} file(s)")

        return bool(self.failed_files) or (self.strict and bool(self.unresolved_report))


# ---------------------------------------------------------------------------
# Module-level singleton — re-created each build via on_config()
# ---------------------------------------------------------------------------

_engine = RefEngine()


# ---------------------------------------------------------------------------
# MkDocs hook entry points
# ---------------------------------------------------------------------------


def on_config(config, **kwargs):
    """Fresh engine per build, settings from extra.svg_refs."""
    global _engine
    _engine = RefEngine()

    extra = config.get("extra") or {}
    _engine.configure(extra.get("svg_refs"))

    if _engine.external_projects:
        log.info(
            f"[svg-ref] {len(_engine.external_projects)} external project(s): "
            f"{', '.join(sorted(_engine.external_projects))}"
        )
    return config


def on_files(files, config, **kwargs):
    """Build the page index once per build."""
    _engine.build_indexes(files)
    log.info(
        f"[svg-ref] Indexed {len(_engine.page_index_by_path)} pages "
        f"({len(_engine.page_index_by_stem)} unique stems), "
        f"{len(_engine.svg_files)} SVG file(s)"
    )
    return files


def on_page_markdown(markdown, page, config, files, **kwargs):
    """Record headings and embedded diagrams; the markdown is not changed."""
    _engine.cache_page_headings(page.file.src_path, markdown)
    _engine.track_svg_embeds(markdown, page.file.src_path)
    return markdown


def on_post_build(config, **kwargs):
    """Patch the built SVGs, then fail the build if asked to."""
    _engine.patch_svg_files(config["site_dir"])

    if _engine.report():
        raise SystemExit("[svg-ref] Diagram reference patching failed")
