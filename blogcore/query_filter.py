"""
Search predicates for post listings.

The store filters with plain Python callables, so a search term becomes a
closure over the title instead of a pattern handed to the storage layer.
"""

import logging
from typing import Optional

from blogcore.db import Filter

logger = logging.getLogger(__name__)


def build_title_filter(search_term: Optional[str]) -> Filter:
    """
    Build a post predicate from the optional `search` query parameter.

    No term (or only whitespace) matches every post. Otherwise the term is
    matched literally, case-insensitively, anywhere in the title; characters
    such as '.' or '*' have no special meaning.
    """
    if search_term is None or not search_term.strip():
        return lambda post: True

    needle = search_term.casefold()
    logger.debug(f"Filtering posts by title containing {search_term!r}")

    def title_filter(post) -> bool:
        title = post.get('title')
        return isinstance(title, str) and needle in title.casefold()

    return title_filter
