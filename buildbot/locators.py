# buildbot/locators.py
"""
Release locators: find the newest release of a project upstream.

One strategy per source shape:
- FlatIndexLocator: directory listing, newest matching file wins
- SiblingPageLocator: one download page shared by sibling projects, every
  matching file is classified by prefix (LuaJIT 1 vs LuaJIT 2)
- HomepageLocator: page that only links the current release
- TagListLocator: JSON tag list of a hosted repository, tags normalized to
  version keys by a per-project function that also filters them

All of them return a ReleaseRef through Workspace.resolve().
"""

from __future__ import annotations

import os
import re
import json
from html.parser import HTMLParser
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple
from urllib.parse import unquote, urljoin, urlparse

from buildbot.errors import ClassificationError, ConfigError, NotFound
from buildbot.logging import get_logger
from buildbot.versions import select_max
from buildbot.workspace import ReleaseRef, Workspace

logger = get_logger("locators")

Fetch = Callable[[str], bytes]
Normalizer = Callable[[str], Optional[str]]


# ----------------------
# HTML anchor parser
# ----------------------
class AnchorParser(HTMLParser):
    def __init__(self):
        super().__init__()
        self.links: List[str] = []

    def handle_starttag(self, tag, attrs):
        if tag.lower() == "a":
            for k, v in attrs:
                if k.lower() == "href" and v:
                    self.links.append(v)
                    break


def extract_links(html: str) -> List[str]:
    p = AnchorParser()
    p.feed(html)
    p.close()
    return p.links


def link_name(href: str) -> str:
    return os.path.basename(unquote(urlparse(href).path))


# ----------------------
# Tag normalizers
# ----------------------
_UNDERSCORE_TAG = re.compile(r"^v_?(\d+(?:[._]\d+)*)$")
_DOTTED_TAG = re.compile(r"^v?(\d+(?:\.\d+)*)$")


def underscore_version(tag: str) -> Optional[str]:
    """v1_6_3, v_1_4_2 and v1.5.0 all become dotted keys; other tags are dropped."""
    m = _UNDERSCORE_TAG.match(tag)
    return m.group(1).replace("_", ".") if m else None


def dotted_version(tag: str) -> Optional[str]:
    m = _DOTTED_TAG.match(tag)
    return m.group(1) if m else None


TAG_NORMALIZERS: Dict[str, Normalizer] = {
    "underscore_version": underscore_version,
    "dotted_version": dotted_version,
}


# ----------------------
# Locators
# ----------------------
class ReleaseLocator:
    """Common plumbing: page download and regex filtering of anchors."""

    def __init__(self, fetch: Fetch, workspace: Workspace, url: str, pattern: Optional[str] = None):
        self.fetch = fetch
        self.workspace = workspace
        self.url = url
        self.pattern = re.compile(pattern) if pattern else None

    def _page(self) -> str:
        return self.fetch(self.url).decode("utf-8", errors="replace")

    def matching_links(self) -> List[Tuple[str, str]]:
        """[(file name, absolute url)] for every anchor matching the pattern, in page order."""
        out: List[Tuple[str, str]] = []
        for href in extract_links(self._page()):
            name = link_name(href)
            if name and self.pattern.search(name):
                out.append((name, urljoin(self.url, href)))
        return out

    def locate(self) -> ReleaseRef:
        raise NotImplementedError


class FlatIndexLocator(ReleaseLocator):
    def locate(self) -> ReleaseRef:
        candidates = dict(self.matching_links())
        if not candidates:
            raise NotFound(f"no file matching {self.pattern.pattern!r} listed at {self.url}")
        latest = select_max(candidates, strip_known_extensions=True)
        logger.info("Latest release at %s: %s", self.url, latest)
        return self.workspace.resolve(candidates[latest])


class HomepageLocator(ReleaseLocator):
    def locate(self) -> ReleaseRef:
        for name, url in self.matching_links():
            logger.info("Current release at %s: %s", self.url, name)
            return self.workspace.resolve(url)
        raise NotFound(f"no link matching {self.pattern.pattern!r} on {self.url}")


class SiblingPageLocator(ReleaseLocator):
    """
    buckets maps a bucket name (project) to the filename prefix identifying
    it. A file that matches the pattern but no prefix means the page no
    longer looks the way we expect, which is an error.
    """

    def __init__(self, fetch: Fetch, workspace: Workspace, url: str, pattern: str,
                 buckets: Optional[Dict[str, str]] = None):
        super().__init__(fetch, workspace, url, pattern)
        self.buckets: Dict[str, str] = dict(buckets or {})
        self._located: Optional[Dict[str, ReleaseRef]] = None

    def add_bucket(self, name: str, prefix: str) -> None:
        self.buckets[name] = prefix
        self._located = None

    def classify(self) -> Dict[str, Dict[str, str]]:
        classified: Dict[str, Dict[str, str]] = {b: {} for b in self.buckets}
        for name, url in self.matching_links():
            for bucket, prefix in self.buckets.items():
                if name.startswith(prefix):
                    classified[bucket][name] = url
                    break
            else:
                raise ClassificationError(f"failed to classify download: {url}")
        return classified

    def locate_all(self) -> Dict[str, ReleaseRef]:
        if self._located is None:
            located: Dict[str, ReleaseRef] = {}
            for bucket, candidates in self.classify().items():
                if not candidates:
                    continue
                latest = select_max(candidates, strip_known_extensions=True)
                logger.info("Latest %s release at %s: %s", bucket, self.url, latest)
                located[bucket] = self.workspace.resolve(candidates[latest])
            self._located = located
        return dict(self._located)

    def bucket(self, name: str) -> "BucketLocator":
        if name not in self.buckets:
            raise ConfigError(f"{self.url} has no bucket named {name!r} (known: {', '.join(self.buckets)})")
        return BucketLocator(self, name)


class BucketLocator:
    """Per-project view of a SiblingPageLocator; the page is fetched once."""

    def __init__(self, page: SiblingPageLocator, name: str):
        self.page = page
        self.name = name

    def locate(self) -> ReleaseRef:
        located = self.page.locate_all()
        if self.name not in located:
            raise NotFound(f"no {self.name} release (prefix {self.page.buckets[self.name]!r}) on {self.page.url}")
        return located[self.name]


class TagListLocator:
    def __init__(self, fetch: Fetch, workspace: Workspace, api_url: str, archive_url: str,
                 normalize: Normalizer, filename: Optional[str] = None):
        self.fetch = fetch
        self.workspace = workspace
        self.api_url = api_url
        self.archive_url = archive_url
        self.normalize = normalize
        self.filename = filename

    def tags(self) -> List[str]:
        try:
            payload = json.loads(self.fetch(self.api_url).decode("utf-8"))
        except ValueError as e:
            raise NotFound(f"tag list at {self.api_url} is not valid JSON: {e}") from e
        if not isinstance(payload, list):
            raise NotFound(f"tag list at {self.api_url} is not a list")
        return [t["name"] for t in payload if isinstance(t, dict) and isinstance(t.get("name"), str)]

    def locate(self) -> ReleaseRef:
        keys: Dict[str, str] = {}
        for tag in self.tags():
            key = self.normalize(tag)
            if key is None:
                logger.debug("Ignoring tag %s from %s", tag, self.api_url)
                continue
            keys.setdefault(key, tag)
        if not keys:
            raise NotFound(f"no usable release tag listed at {self.api_url}")
        version = select_max(keys)
        tag = keys[version]
        logger.info("Latest tag at %s: %s (version %s)", self.api_url, tag, version)
        url = self.archive_url.format(tag=tag, version=version)
        filename = self.filename.format(tag=tag, version=version) if self.filename else None
        return self.workspace.resolve(url, filename)


# ----------------------
# Factory
# ----------------------
def _require(source: Dict[str, Any], key: str, project: str) -> Any:
    if not source.get(key):
        raise ConfigError(f"project {project}: source.{key} is required")
    return source[key]


def build_locators(projects: Iterable[Any], fetch: Fetch, workspace: Workspace) -> Dict[str, Any]:
    """One locator per project; projects sharing a download page share its locator."""
    locators: Dict[str, Any] = {}
    pages: Dict[Tuple[str, str], SiblingPageLocator] = {}
    for project in projects:
        source = project.source
        kind = source.get("type")
        if kind == "index":
            locators[project.name] = FlatIndexLocator(fetch, workspace, _require(source, "url", project.name),
                                                      _require(source, "pattern", project.name))
        elif kind == "homepage":
            locators[project.name] = HomepageLocator(fetch, workspace, _require(source, "url", project.name),
                                                     _require(source, "pattern", project.name))
        elif kind == "page":
            key = (_require(source, "url", project.name), _require(source, "pattern", project.name))
            if key not in pages:
                pages[key] = SiblingPageLocator(fetch, workspace, key[0], key[1])
            pages[key].add_bucket(project.name, _require(source, "prefix", project.name))
            locators[project.name] = pages[key].bucket(project.name)
        elif kind == "tags":
            normalizer = source.get("normalize", "dotted_version")
            if normalizer not in TAG_NORMALIZERS:
                raise ConfigError(f"project {project.name}: unknown tag normalizer {normalizer!r}")
            locators[project.name] = TagListLocator(
                fetch, workspace,
                api_url=_require(source, "url", project.name),
                archive_url=_require(source, "archive", project.name),
                normalize=TAG_NORMALIZERS[normalizer],
                filename=source.get("filename"),
            )
        else:
            raise ConfigError(f"project {project.name}: unknown source type {kind!r}")
    return locators
