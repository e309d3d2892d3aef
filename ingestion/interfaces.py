"""
Collaborator interfaces consumed by the sync engine.

The engine talks to the outside world only through these:

    RemoteFetcher   - pulls one page of query results from the tracker
    ItemSink        - applies one fetched item to the local store
    DurableStore    - persists checkpoints and deferred operations
    ImportObserver  - receives progress and error events
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from schemas.sync import (
    QuerySpec,
    PageResult,
    ItemCounts,
    Checkpoint,
    DeferredOperationDescriptor,
)
from models.base import ImportPhase
import logging

logger = logging.getLogger(__name__)


class RemoteFetcher(ABC):
    """Fetches pages of query results from the remote tracker."""

    @abstractmethod
    async def fetch_page(
        self,
        spec: QuerySpec,
        page_token: Optional[str],
        max_results: int
    ) -> PageResult:
        """
        Fetch one page.

        Args:
            spec: Query being executed (including any resume predicate)
            page_token: Continuation token from the previous page, None for the first
            max_results: Number of items requested for this page

        Raises:
            Any exception; the executor classifies it.
        """
        pass

    async def validate_query(self, spec: QuerySpec) -> bool:
        """
        Check that the remote accepts the query, without fetching results.

        The default asks for an empty page; fetchers with a dedicated
        validation mode should override this.
        """
        try:
            await self.fetch_page(spec, None, 0)
        except Exception as e:
            logger.info(f"Query rejected: {spec.query!r} ({e})")
            return False
        return True


class ItemSink(ABC):
    """
    Applies fetched items locally.

    Must be idempotent: a resumed session may re-apply the last item of
    an interrupted chunk.
    """

    @abstractmethod
    async def apply(self, item: Dict[str, Any]) -> ItemCounts:
        """Apply one item and report what happened to it"""
        pass


class DurableStore(ABC):
    """Durable persistence for resume state and deferred work."""

    @abstractmethod
    async def save_checkpoint(self, session_id: str, checkpoint: Checkpoint) -> None:
        pass

    @abstractmethod
    async def load_checkpoint(self, session_id: str) -> Optional[Checkpoint]:
        pass

    @abstractmethod
    async def clear_checkpoint(self, session_id: str) -> None:
        pass

    @abstractmethod
    async def enqueue(self, descriptor: DeferredOperationDescriptor) -> None:
        pass


class ImportObserver:
    """
    Receives synchronous progress and error events.

    Both hooks are no-ops by default; override the ones you need.
    Exceptions raised here are logged and never abort an import.
    """

    def on_progress(
        self,
        processed: int,
        total: int,
        phase: ImportPhase,
        detail: Optional[Dict[str, Any]] = None
    ) -> None:
        pass

    def on_error(self, item_key: str, message: str) -> None:
        pass
