"""Content Extractor - heuristic shape detection over archive payloads.

Archive exports have changed shape many times. This module turns whatever
parsed JSON the archive reader produced into four typed record lists (posts,
friends, media, messages) plus the optional ``experiences`` sub-document.

Detection is a list of ordered ``(predicate, extractor)`` rules per entity
type. Every matching rule contributes, so a payload carrying both ``posts``
and ``your_posts`` yields the concatenation of both arrays.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

POST_KEYS = ('posts', 'status_updates', 'timeline', 'your_posts')
FRIEND_KEYS = ('friends', 'friends_v2', 'your_friends')
MEDIA_KEYS = ('photos', 'videos', 'media', 'other_photos_v2', 'your_videos')
MESSAGE_KEYS = ('messages', 'inbox', 'your_messages')

Predicate = Callable[[Any], bool]
Extractor = Callable[[Any], list]
Rule = tuple[Predicate, Extractor]


@dataclass
class ExtractedContent:
    """Typed record lists pulled out of an archive payload."""

    posts: list = field(default_factory=list)
    friends: list = field(default_factory=list)
    media: list = field(default_factory=list)
    messages: list = field(default_factory=list)
    experiences: Optional[dict] = None

    @property
    def record_count(self) -> int:
        """Records across the four entity arrays (profile excluded)."""
        return len(self.posts) + len(self.friends) + len(self.media) + len(self.messages)

    def has_entity_data(self) -> bool:
        return self.record_count > 0


def _first(value: Any) -> Any:
    if isinstance(value, list) and value:
        return value[0]
    return None


def _looks_like_post(item: Any) -> bool:
    if not isinstance(item, dict):
        return False
    data = item.get('data')
    return isinstance(data, list) and bool(data) and isinstance(data[0], dict) and 'post' in data[0]


def _looks_like_friend(item: Any) -> bool:
    return isinstance(item, dict) and 'name' in item


def _looks_like_media(item: Any) -> bool:
    return isinstance(item, dict) and 'uri' in item


def _flatten_thread_messages(items: list) -> list:
    """Flatten message threads (``{"messages": [...]}``) into plain messages."""
    flattened = []
    for item in items:
        if isinstance(item, dict) and isinstance(item.get('messages'), list) and 'content' not in item:
            flattened.extend(item['messages'])
        else:
            flattened.append(item)
    return flattened


def _collect_keys(keys: tuple[str, ...]) -> Extractor:
    """Build an extractor that concatenates every list stored under ``keys``.

    A dict stored under one of the keys is searched one level down with the
    same key list, which covers wrappers like ``{"friends": {"friends_v2": [...]}}``.
    """
    def extract(payload: dict) -> list:
        collected: list = []
        for key in keys:
            value = payload.get(key)
            if isinstance(value, list):
                collected.extend(value)
            elif isinstance(value, dict):
                for inner_key in keys:
                    inner = value.get(inner_key)
                    if isinstance(inner, list):
                        collected.extend(inner)
        return collected
    return extract


def _has_any_key(keys: tuple[str, ...]) -> Predicate:
    return lambda payload: isinstance(payload, dict) and any(key in payload for key in keys)


def _is_bare_array_of(looks_like: Callable[[Any], bool]) -> Predicate:
    return lambda payload: isinstance(payload, list) and looks_like(_first(payload))


def _is_single_post(payload: Any) -> bool:
    return _looks_like_post(payload)


def _whole_list(payload: list) -> list:
    return list(payload)


POST_RULES: list[Rule] = [
    (_has_any_key(POST_KEYS), _collect_keys(POST_KEYS)),
    (_is_single_post, lambda payload: [payload]),
    (_is_bare_array_of(_looks_like_post), _whole_list),
]

FRIEND_RULES: list[Rule] = [
    (_has_any_key(FRIEND_KEYS), _collect_keys(FRIEND_KEYS)),
    (
        lambda payload: _is_bare_array_of(_looks_like_friend)(payload) and not _looks_like_post(_first(payload)),
        _whole_list,
    ),
]

MEDIA_RULES: list[Rule] = [
    (_has_any_key(MEDIA_KEYS), _collect_keys(MEDIA_KEYS)),
    (
        lambda payload: (
            _is_bare_array_of(_looks_like_media)(payload)
            and not _looks_like_friend(_first(payload))
        ),
        _whole_list,
    ),
]

MESSAGE_RULES: list[Rule] = [
    (_has_any_key(MESSAGE_KEYS), lambda payload: _flatten_thread_messages(_collect_keys(MESSAGE_KEYS)(payload))),
]


class ContentExtractor:
    """Pull typed record arrays out of an archive payload.

    Unknown shapes never raise; they simply produce empty arrays.

    Example Usage:
        ```python
        content = ContentExtractor().extract({"posts": [...], "friends_v2": [...]})
        content.posts, content.friends
        ```
    """

    def __init__(
        self,
        post_rules: Optional[list[Rule]] = None,
        friend_rules: Optional[list[Rule]] = None,
        media_rules: Optional[list[Rule]] = None,
        message_rules: Optional[list[Rule]] = None,
    ):
        self.post_rules = post_rules if post_rules is not None else POST_RULES
        self.friend_rules = friend_rules if friend_rules is not None else FRIEND_RULES
        self.media_rules = media_rules if media_rules is not None else MEDIA_RULES
        self.message_rules = message_rules if message_rules is not None else MESSAGE_RULES

    def extract(self, payload: Any) -> ExtractedContent:
        """Extract posts, friends, media, messages and experiences.

        Parameters:
            payload: Parsed archive JSON (dict or list)

        Returns:
            ExtractedContent: Typed arrays, empty where nothing matched
        """
        if not isinstance(payload, (dict, list)):
            logger.warning(f"Unsupported payload type for extraction: {type(payload).__name__}")
            return ExtractedContent()

        content = ExtractedContent(
            posts=self._apply(self.post_rules, payload),
            friends=self._apply(self.friend_rules, payload),
            media=self._apply(self.media_rules, payload),
            messages=self._apply(self.message_rules, payload),
            experiences=self.extract_experiences(payload),
        )
        logger.debug(
            f"Extracted {len(content.posts)} posts, {len(content.friends)} friends, "
            f"{len(content.media)} media, {len(content.messages)} messages"
        )
        return content

    def extract_posts(self, payload: Any) -> list:
        return self._apply(self.post_rules, payload)

    def extract_friends(self, payload: Any) -> list:
        return self._apply(self.friend_rules, payload)

    def extract_media(self, payload: Any) -> list:
        return self._apply(self.media_rules, payload)

    def extract_messages(self, payload: Any) -> list:
        return self._apply(self.message_rules, payload)

    @staticmethod
    def extract_experiences(payload: Any) -> Optional[dict]:
        if isinstance(payload, dict) and isinstance(payload.get('experiences'), dict):
            return payload['experiences']
        return None

    @staticmethod
    def _apply(rules: list[Rule], payload: Any) -> list:
        records: list = []
        for predicate, extractor in rules:
            if predicate(payload):
                records.extend(extractor(payload))
        return records
