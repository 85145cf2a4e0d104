"""
Dependency injection container for RowLedger components.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any, AsyncIterator, Callable, Dict, Generic, List, Optional, TypeVar
from uuid import uuid4

import structlog

from rowledger.config import Config

if TYPE_CHECKING:
    from rowledger.engine import ImportEngine
    from rowledger.storage import SQLiteCorpusStore

T = TypeVar("T")


class LazyInstance(Generic[T]):
    """Lazy-loaded instance with lifecycle management."""

    def __init__(self, factory: Callable[..., T], *args: Any, **kwargs: Any) -> None:
        self._factory = factory
        self._args = args
        self._kwargs = kwargs
        self._instance: Optional[T] = None
        self._initialized = False

    async def get(self) -> T:
        """Get or create the instance, awaiting its ``initialize`` hook once."""
        if not self._initialized:
            instance = self._factory(*self._args, **self._kwargs)
            initialize = getattr(instance, "initialize", None)
            if callable(initialize):
                await initialize()
            self._instance = instance
            self._initialized = True
        assert self._instance is not None
        return self._instance

    async def cleanup(self) -> None:
        """Clean up the instance."""
        close = getattr(self._instance, "close", None)
        if callable(close):
            await close()
        self._instance = None
        self._initialized = False


class DependencyContainer:
    """
    Owns the configuration and the long-lived components built from it.

    The corpus store opens its connection pool on first use; the engine is
    built on top of it. Use ``lifecycle()`` so the pool is always closed.
    """

    def __init__(self, config_path: Optional[Path] = None, config: Optional[Config] = None) -> None:
        self.config_path = config_path
        self.config: Optional[Config] = config
        self.logger = structlog.get_logger(self.__class__.__name__)

        self._instances: Dict[str, LazyInstance[Any]] = {}
        self._instances_lock = asyncio.Lock()
        self._shutdown_handlers: List[Callable[[], Any]] = []

        self.session_id = str(uuid4())
        self.is_running = False

    async def initialize(self) -> None:
        """Load configuration (unless one was given) and register lazy instances."""
        if self.config is None:
            self.load_config()
        self._create_instances()
        self.is_running = True

        self.logger.info(
            "Dependency container initialized",
            session_id=self.session_id,
            config_path=str(self.config_path) if self.config_path else "default",
        )

    def load_config(self) -> None:
        if self.config_path and self.config_path.exists():
            self.config = Config.from_yaml(self.config_path)
        else:
            self.config = Config()

    def _create_instances(self) -> None:
        if self.config is None:
            raise RuntimeError("Configuration must be loaded before creating instances")

        # Import modules only when needed to avoid circular imports
        from rowledger.storage import SQLiteCorpusStore

        self._instances = {
            "store": LazyInstance(SQLiteCorpusStore, self.config.storage.sqlite),
        }

    async def get_store(self) -> SQLiteCorpusStore:
        """Get the corpus store, opening its connection pool on first use."""
        async with self._instances_lock:
            return await self._instances["store"].get()  # type: ignore

    async def get_engine(self) -> ImportEngine:
        """Get the import engine bound to the container's store and configuration."""
        from rowledger.engine import ImportEngine

        store = await self.get_store()
        async with self._instances_lock:
            if "engine" not in self._instances:
                self._instances["engine"] = LazyInstance(ImportEngine, store, self.config)
            return await self._instances["engine"].get()  # type: ignore

    @asynccontextmanager
    async def lifecycle(self) -> AsyncIterator[DependencyContainer]:
        """Context manager for proper lifecycle management."""
        try:
            await self.initialize()
            yield self
        finally:
            await self.shutdown()

    async def shutdown(self) -> None:
        """Run shutdown handlers, then close every managed instance."""
        if not self.is_running:
            return

        self.logger.info("Shutting down dependency container", session_id=self.session_id)

        for handler in self._shutdown_handlers:
            try:
                if asyncio.iscoroutinefunction(handler):
                    await handler()
                else:
                    handler()
            except Exception as e:
                self.logger.error("Error in shutdown handler", error=str(e))

        await self._cleanup_instances()

        self.is_running = False
        self.logger.info("Dependency container shutdown complete")

    async def _cleanup_instances(self) -> None:
        for name, instance in self._instances.items():
            try:
                await instance.cleanup()
            except Exception as e:
                self.logger.error(f"Error cleaning up {name}", error=str(e))
        self._instances.clear()

    def add_shutdown_handler(self, handler: Callable[[], Any]) -> None:
        """Add a custom shutdown handler."""
        self._shutdown_handlers.append(handler)

    def get_health_status(self) -> Dict[str, Any]:
        """Get health status of all managed components."""
        return {
            "session_id": self.session_id,
            "is_running": self.is_running,
            "config_loaded": self.config is not None,
            "instances_count": len(self._instances),
            "config_path": str(self.config_path) if self.config_path else None,
        }
