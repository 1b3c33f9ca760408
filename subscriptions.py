#!/usr/bin/env python3
"""Subscription management: subscribe by URL, unsubscribe, OPML import."""

from dataclasses import dataclass
from typing import List, Optional

from bs4 import BeautifulSoup

from classifier import URLClassifier
from config import get_logger
from entities import Classification, Source
from errors import StorageError
from models import DatabaseQueue

logger = get_logger("subscriptions")

UNTITLED = "Untitled"


@dataclass
class OpmlOutline:
    url: str
    title: str


@dataclass
class SubscribeOutcome:
    url: str
    ok: bool
    source: Optional[Source] = None
    created_subscription: bool = False
    classification: Optional[Classification] = None
    error: Optional[str] = None

    @property
    def warning(self) -> Optional[str]:
        c = self.classification
        if c and c.was_redirected:
            return f"Handle @{c.original_handle} now redirects to @{c.final_handle}"
        return None


async def subscribe(db: DatabaseQueue, classifier: URLClassifier, user_id: str,
                    url: str, title: Optional[str] = None) -> SubscribeOutcome:
    """Classify ``url``, reuse or create its source and subscribe ``user_id``.

    Classification problems are reported in the outcome. StorageError propagates.
    """
    classification = await classifier.classify(url)
    if classification.source_type is None:
        return SubscribeOutcome(url=url, ok=False, classification=classification,
                                error=classification.error or "Could not classify URL")

    source_url = classification.suggested_feed_url or url
    source = await db.execute(
        'create_source',
        url=source_url,
        source_type=classification.source_type.value,
        title=title or classification.suggested_title or source_url,
        description=classification.description,
        image_url=classification.image_url,
    )
    created = await db.execute('subscribe_user', user_id=user_id, source_id=source.id)

    outcome = SubscribeOutcome(url=url, ok=True, source=source, created_subscription=created,
                               classification=classification, error=classification.error)
    if outcome.warning:
        logger.warning(f"{url}: {outcome.warning}")
    logger.info(
        f"User {user_id} {'subscribed to' if created else 'already follows'} "
        f"{source.source_type.value} source {source.id} ({source_url})"
    )
    return outcome


async def unsubscribe(db: DatabaseQueue, user_id: str, source_id: str) -> dict:
    outcome = await db.execute('unsubscribe_user', user_id=user_id, source_id=source_id)
    if outcome["source_deleted"]:
        logger.info(f"Source {source_id} has no subscribers left and was marked deleted")
    return outcome


async def set_paused(db: DatabaseQueue, user_id: str, source_id: str, paused: bool) -> bool:
    """Pause or resume a subscription. Paused sources are left out of batch syncs and status."""
    changed = await db.execute('set_subscription_active', user_id=user_id, source_id=source_id,
                               is_active=not paused)
    if changed:
        logger.info(f"{'Paused' if paused else 'Resumed'} source {source_id} for {user_id}")
    return changed


def parse_opml(text: str) -> List[OpmlOutline]:
    """Collect every outline carrying a feed URL, in document order."""
    soup = BeautifulSoup(text, 'xml')
    outlines: List[OpmlOutline] = []
    seen = set()
    for node in soup.find_all('outline'):
        url = node.get('xmlUrl') or node.get('xmlurl') or node.get('url')
        if not url or not url.strip():
            continue
        url = url.strip()
        if url in seen:
            continue
        seen.add(url)
        title = (node.get('title') or node.get('text') or '').strip() or UNTITLED
        outlines.append(OpmlOutline(url=url, title=title))
    return outlines


async def import_opml(db: DatabaseQueue, classifier: URLClassifier, user_id: str,
                      text: str) -> List[SubscribeOutcome]:
    """Subscribe ``user_id`` to every feed in an OPML document, one at a time."""
    outlines = parse_opml(text)
    logger.info(f"Importing {len(outlines)} outlines for user {user_id}")
    outcomes: List[SubscribeOutcome] = []
    for outline in outlines:
        try:
            outcome = await subscribe(db, classifier, user_id, outline.url, title=outline.title)
        except StorageError:
            raise
        except Exception as e:
            logger.error(f"Failed to import {outline.url}: {e}")
            outcome = SubscribeOutcome(url=outline.url, ok=False, error=str(e))
        outcomes.append(outcome)

    imported = sum(1 for o in outcomes if o.ok)
    logger.info(f"OPML import for {user_id}: {imported}/{len(outcomes)} subscribed")
    return outcomes
