"""
High-level per-item enrichment pipeline.

`enrich_item` is what a worker runs for one work item:
keyword -> provider image (or placeholder) -> overlay -> upload -> read URL.
"""

from __future__ import annotations

from datetime import datetime
import logging
from typing import Optional
import uuid

from . import config
from .compositor import CompositorOptions, compose_item_image, create_placeholder
from .errors import ExternalServiceError
from .models import ItemRenderContext, utcnow
from .object_store import ObjectStore

logger = logging.getLogger(__name__)

IMAGE_CONTENT_TYPE = "image/jpeg"


def build_object_name(prefix: str, item_id: str, now: datetime) -> str:
    """Unique object name from item id and timestamp; the suffix covers redeliveries."""
    return f"{prefix}{item_id}_{now:%Y%m%d%H%M%S}_{uuid.uuid4().hex[:8]}.jpg"


def fetch_source_image(
    image_provider,
    keyword: str,
    options: CompositorOptions,
    use_placeholder_on_error: bool = True,
) -> bytes:
    """
    Provider image for `keyword`, degraded to a placeholder if allowed.

    Raises:
        ExternalServiceError: provider failed and placeholders are disabled.
    """
    try:
        return image_provider.fetch_image(keyword)
    except ExternalServiceError as exc:
        if not use_placeholder_on_error:
            logger.error("Image provider failed for %r and placeholder fallback is disabled", keyword)
            raise
        logger.warning("Falling back to placeholder image for %r: %s", keyword, exc)
        return create_placeholder(options)


def enrich_item(
    context: ItemRenderContext,
    search_keyword: str,
    image_provider,
    object_store: ObjectStore,
    options: Optional[CompositorOptions] = None,
    settings: Optional[config.Settings] = None,
    now: Optional[datetime] = None,
) -> str:
    """
    Produce and store the labelled image for one item.

    Returns:
        A time-limited read-only URL to the uploaded JPEG.
    """
    settings = settings or config.get_settings()
    options = options or CompositorOptions.from_settings(settings)
    now = now or utcnow()

    logger.info("Processing image for item %s (%s)", context.item_id, context.name)
    source = fetch_source_image(
        image_provider,
        search_keyword,
        options,
        use_placeholder_on_error=settings.use_placeholder_on_error,
    )
    jpeg_bytes = compose_item_image(source, context, options, now=now)

    name = build_object_name(settings.object_key_prefix, context.item_id, now)
    object_store.put(name, jpeg_bytes, IMAGE_CONTENT_TYPE)
    url = object_store.get_read_reference(name, settings.result_url_ttl_seconds)
    logger.info("Uploaded image for item %s as %s", context.item_id, name)
    return url
