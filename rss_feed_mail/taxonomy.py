"""
Feed taxonomy models and resolution helpers.

The feed configuration is a tree of named groups, each holding feeds and
nested groups. These helpers flatten the tree into a fetch list, map a
feed URL back to its group path, and render paths as subject prefixes
and Gmail label strings.
"""

import logging
import re
from collections.abc import Iterator
from dataclasses import dataclass

from pydantic import BaseModel, Field, field_validator, model_validator

logger = logging.getLogger(__name__)

UNCATEGORIZED = "Uncategorized"
ROOT_LABEL = "RSS Feeds"
PATH_SEPARATOR = "/"

_PREFIX_PATTERN = re.compile(r"\[([^\[\]]*)\]")


class FeedRef(BaseModel):
    """
    A single feed in the taxonomy.

    Attributes
    ----------
    title : str
        Configured title, used when the feed does not report one.
    url : str
        URL of the RSS/Atom feed.
    """

    title: str = ""
    url: str

    @field_validator("url")
    @classmethod
    def check_url(cls, v: str) -> str:
        """Validate that the feed URL is not empty."""
        if not v or not v.strip():
            raise ValueError("Feed URL cannot be empty")
        return v.strip()


def _check_unique_names(groups: list["Group"]) -> None:
    seen: set[str] = set()
    for group in groups:
        if group.name in seen:
            raise ValueError(f"Duplicate sibling group name: {group.name!r}")
        seen.add(group.name)


class Group(BaseModel):
    """
    A named node of the taxonomy.

    Attributes
    ----------
    name : str
        Group name, one segment of a group path.
    feeds : list[FeedRef]
        Feeds directly inside this group.
    groups : list[Group]
        Nested groups.
    """

    name: str
    feeds: list[FeedRef] = Field(default_factory=list)
    groups: list["Group"] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def check_name(cls, v: str) -> str:
        """Reject names that are empty or would forge extra path segments."""
        v = v.strip()
        if not v:
            raise ValueError("Group name cannot be empty")
        if PATH_SEPARATOR in v:
            raise ValueError(f"Group name cannot contain '{PATH_SEPARATOR}': {v!r}")
        return v

    @model_validator(mode="after")
    def check_unique_children(self) -> "Group":
        """Validate that child group names are unique."""
        _check_unique_names(self.groups)
        return self


class FeedTree(BaseModel):
    """Root of the feed configuration document."""

    groups: list[Group] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_unique_groups(self) -> "FeedTree":
        """Validate that top-level group names are unique."""
        _check_unique_names(self.groups)
        return self


@dataclass(frozen=True)
class FlatFeed:
    """A feed together with the path of the groups containing it."""

    title: str
    url: str
    group_path: str


def _join(parent: str, name: str) -> str:
    return f"{parent}{PATH_SEPARATOR}{name}" if parent else name


def iter_groups(tree: FeedTree) -> Iterator[tuple[str, Group]]:
    """
    Walk the tree depth-first, yielding every group with its path.

    Parameters
    ----------
    tree : FeedTree
        The feed configuration.

    Yields
    ------
    tuple[str, Group]
        Group path (root group included) and the group itself, parents
        before children, siblings in declaration order.
    """

    def walk(groups: list[Group], parent: str) -> Iterator[tuple[str, Group]]:
        for group in groups:
            path = _join(parent, group.name)
            yield path, group
            yield from walk(group.groups, path)

    yield from walk(tree.groups, "")


def flatten(tree: FeedTree) -> list[FlatFeed]:
    """
    Flatten the taxonomy into a list of feeds.

    A group's own feeds come before the feeds of its subgroups.

    Parameters
    ----------
    tree : FeedTree
        The feed configuration.

    Returns
    -------
    list[FlatFeed]
        One record per configured feed, in depth-first order.
    """
    feeds: list[FlatFeed] = []
    for path, group in iter_groups(tree):
        for feed in group.feeds:
            feeds.append(FlatFeed(title=feed.title or feed.url, url=feed.url, group_path=path))

    logger.debug("Flattened taxonomy into %d feed(s)", len(feeds))
    return feeds


def resolve_group_path(url: str, tree: FeedTree) -> str:
    """
    Find the group path of the first group containing a feed URL.

    Returns ``UNCATEGORIZED`` when the URL is not in the taxonomy, for
    example because the feed was removed from the configuration.
    """
    for path, group in iter_groups(tree):
        if any(feed.url == url for feed in group.feeds):
            return path
    return UNCATEGORIZED


def split_path(path: str) -> list[str]:
    """Split a group path into its segments."""
    return [part for part in path.split(PATH_SEPARATOR) if part]


def format_subject_prefix(path: str) -> str:
    """
    Format a group path as a bracketed subject prefix.

    Examples
    --------
    >>> format_subject_prefix("Tech/Programming")
    '[Tech][Programming]'
    """
    parts = split_path(path or "")
    if not parts or path == UNCATEGORIZED:
        return f"[{UNCATEGORIZED}]"
    return "".join(f"[{part}]" for part in parts)


def parse_subject_prefix(subject: str) -> list[str]:
    """Recover the group path segments from the leading brackets of a subject."""
    segments = []
    position = 0
    while True:
        match = _PREFIX_PATTERN.match(subject, position)
        if match is None:
            return segments
        segments.append(match.group(1))
        position = match.end()


def build_subject(path: str, feed_title: str, item_title: str) -> str:
    """Compose the email subject for a feed item."""
    return f"{format_subject_prefix(path)} {feed_title}: {item_title}"


def build_label_string(path: str, root: str = ROOT_LABEL) -> str:
    """
    Build the value of the ``X-GM-LABELS`` header for a group path.

    Every ancestor label is listed so the whole chain applies at once.

    Examples
    --------
    >>> build_label_string("Tech/Programming")
    'RSS Feeds,RSS Feeds/Tech,RSS Feeds/Tech/Programming'
    """
    labels = [root]
    current = root
    for part in split_path(path or UNCATEGORIZED):
        current = _join(current, part)
        labels.append(current)
    return ",".join(labels)
