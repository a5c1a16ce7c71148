"""Content rewriter interface"""

from typing import Any, Protocol

from freshwatch.models.content import RewrittenContent
from freshwatch.services.errors import GenerationError


class ContentRewriter(Protocol):
    """Produces rewritten title, description and tags from fetched metadata"""

    async def rewrite(self, metadata: dict[str, Any]) -> RewrittenContent: ...


class PassthroughRewriter:
    """Rewriter that republishes the fetched metadata unchanged"""

    async def rewrite(self, metadata: dict[str, Any]) -> RewrittenContent:
        """
        Copy title, description and tags from the fetched metadata

        Raises:
            GenerationError: If the metadata has no title
        """
        title = metadata.get("title")
        if not title:
            raise GenerationError("Cannot rewrite content without a title")

        tags = metadata.get("tags") or []
        if isinstance(tags, str):
            tags = [tag.strip() for tag in tags.split(",") if tag.strip()]

        return RewrittenContent(
            title=str(title),
            description=str(metadata.get("description") or ""),
            tags=[str(tag) for tag in tags],
        )
