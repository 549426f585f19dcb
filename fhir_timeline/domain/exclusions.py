"""Archive file exclusion filter.

Social media exports contain many files with no clinical value (settings,
event invitations, group activity, ...). Any entry whose name contains one of
the denylisted file names (case-insensitive) is skipped by the scanner and the
archive reader.
"""

from typing import Any, Iterable, Optional

EXCLUDED_FILES = (
    '.DS_Store',
    "rising_fan_badges_you've_received.json",
    'the_ways_we_can_send_you_notifications.json',
    'contacts_sync_settings.json',
    'books.json',
    'autofill_information.json',
    'predicted_languages.json',
    'synced_contacts_from_instagram.json',
    'your_privacy_jurisdiction.json',
    'primary_public_location.json',
    'timezone.json',
    'primary_location.json',
    'device_location.json',
    'last_location.json',
    'your_events.json',
    'your_event_invitation_links.json',
    'event_invitations.json',
    "events_you've_hidden.json",
    'your_event_responses.json',
    'events_you_hosted.json',
    'your_events_ads_activity.json',
    'your_fundraiser_donations_information.json',
    'fundraisers_donated_to.json',
    'your_fundraiser_settings.json',
    'archived_stories.json',
    'story_reactions.json',
    'your_actions_on_violating_content_in_your_groups.json',
    'chat_invites_received.json',
    'your_comments_in_groups.json',
    'your_group_membership_activity.json',
    "group_invites_you've_received.json",
    'your_participation_requests.json',
    'your_groups.json',
    'your_anonymous_mode_status_in_groups.json',
    'community_chat_settings.json',
    'your_answers_to_membership_questions.json',
    'your_badges.json',
    'your_settings_for_groups_tab.json',
    'your_group_shortcuts.json',
    'your_group_warnings.json',
    'your_contributions.json',
)

_EXCLUDED_LOWER = tuple(name.lower() for name in EXCLUDED_FILES)


def is_excluded(filename: Any) -> bool:
    """Check whether an archive entry should be skipped.

    Parameters:
        filename: Entry name or relative path

    Returns:
        bool: True when the name contains a denylisted file name. Missing,
        empty or non-string names are treated as excluded.
    """
    if not filename or not isinstance(filename, str):
        return True
    lowered = filename.lower()
    return any(excluded in lowered for excluded in _EXCLUDED_LOWER)


def _file_name(file: Any) -> str:
    if isinstance(file, str):
        return file
    if isinstance(file, dict):
        return file.get('name') or file.get('file_name') or file.get('path') or ''
    return getattr(file, 'name', None) or getattr(file, 'path', None) or ''


def filter_excluded(files: Iterable[Any]) -> list[Any]:
    """Return the files whose names are not excluded.

    Accepts plain names, dicts with ``name``/``file_name``/``path`` keys, or
    objects exposing a ``name`` (or ``path``) attribute.
    """
    return [file for file in files if not is_excluded(_file_name(file))]


def excluded_pattern(filename: Any) -> Optional[str]:
    """Return the denylist entry a file name matches, if any."""
    if not filename or not isinstance(filename, str):
        return None
    lowered = filename.lower()
    for excluded, lowered_excluded in zip(EXCLUDED_FILES, _EXCLUDED_LOWER):
        if lowered_excluded in lowered:
            return excluded
    return None
