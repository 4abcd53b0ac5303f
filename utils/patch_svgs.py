"""Patch PlantUML \\ref links in SVG files outside of an MkDocs build."""

import argparse
import logging
import sys
from dataclasses import dataclass
from pathlib import Path

from hooks_svgrefs import RefEngine
from svg_patcher import DEFAULT_HTML_EXTENSION, PlantumlSvgPatcher

log = logging.getLogger("mkdocs.hooks")


@dataclass
class SourceFile:
    """The parts of mkdocs.structure.files.File the engine reads."""

    src_path: str
    dest_path: str = ""


def _parse_external(values):
    projects = {}
    for value in values or []:
        name, sep, prefix = value.partition("=")
        if not sep or not name.strip():
            raise argparse.ArgumentTypeError(f"expected NAME=PREFIX, got {value!r}")
        projects[name.strip()] = prefix.strip()
    return projects


def build_parser():
    parser = argparse.ArgumentParser(
        prog="patch-svgs",
        description="Resolve bare \\ref links in PlantUML SVG output.",
    )
    parser.add_argument("svg_files", nargs="*", help="SVG files to patch in place")
    parser.add_argument("--docs-dir", default="docs", help="Markdown sources to resolve against")
    parser.add_argument(
        "--site-dir",
        help="Patch every SVG under this directory (built site layout)",
    )
    parser.add_argument("--rel-path", default="", help="Prefix from the SVG files to the site root")
    parser.add_argument("--context", default="", help="Page (docs-relative) the SVG files belong to")
    parser.add_argument("--html-extension", default=DEFAULT_HTML_EXTENSION)
    parser.add_argument(
        "--external",
        action="append",
        metavar="NAME=PREFIX",
        help="External project destination (repeatable)",
    )
    parser.add_argument("--strict", action="store_true", help="Fail on unresolved references")
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser


def site_svg_files(site_dir):
    """Every SVG under a built site, keyed by its site-relative path."""
    site = Path(site_dir)
    return [
        SourceFile(src_path=p.relative_to(site).as_posix())
        for p in sorted(site.rglob("*.svg"))
        if p.is_file()
    ]


def index_docs(engine, docs_dir, site_svgs=()):
    """
    Index a docs tree from disk the way on_files/on_page_markdown would.

    `site_svgs` are diagrams that may only exist in the built site (PlantUML
    output rendered during the build); they are patched too.
    """
    docs = Path(docs_dir)
    files = []
    if docs.is_dir():
        files = [
            SourceFile(src_path=p.relative_to(docs).as_posix())
            for p in sorted(docs.rglob("*"))
            if p.is_file()
        ]
    known = {f.src_path for f in files}
    files.extend(f for f in site_svgs if f.src_path not in known)
    engine.build_indexes(files)

    for f in files:
        if not f.src_path.endswith(".md"):
            continue
        try:
            text = (docs / f.src_path).read_text(encoding="utf-8")
        except OSError as exc:
            log.warning(f"[svg-ref] Could not read {f.src_path}: {exc}")
            continue
        engine.cache_page_headings(f.src_path, text)
        engine.track_svg_embeds(text, f.src_path)


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.svg_files and not args.site_dir:
        parser.error("give SVG files or --site-dir")

    try:
        external = _parse_external(args.external)
    except argparse.ArgumentTypeError as exc:
        parser.error(str(exc))

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)-7s -  %(message)s",
    )

    engine = RefEngine()
    engine.configure({
        "html_extension": args.html_extension,
        "external_projects": external,
        "strict": args.strict,
    })

    if not Path(args.docs_dir).is_dir():
        log.warning(f"[svg-ref] Docs directory {args.docs_dir} not found, nothing will resolve")

    site_svgs = site_svg_files(args.site_dir) if args.site_dir else []
    index_docs(engine, args.docs_dir, site_svgs)

    if args.site_dir:
        engine.patch_svg_files(args.site_dir)

    for svg_file in args.svg_files:
        patcher = PlantumlSvgPatcher(
            svg_file,
            args.rel_path,
            args.context,
            engine,
            html_extension=engine.html_extension,
            destinations=engine.external_projects,
        )
        if not patcher.run():
            engine.failed_files.append(svg_file)
            continue
        if patcher.patched:
            engine.patched_files.append(svg_file)
        for name in patcher.unresolved:
            engine.unresolved_report.append(f"{svg_file}: {name}")

    return 1 if engine.report() else 0


if __name__ == "__main__":
    sys.exit(main())
