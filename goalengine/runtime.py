"""
Engine Runtime — builds the engine from configuration and hosts its event loop

Flask runs every async view on a short-lived loop of its own, so the engine
lives on one long-running background loop and requests reach it through
``asyncio.run_coroutine_threadsafe``.
"""
from typing import Any, AsyncIterator, Awaitable, Callable, Iterator, List, Optional, TypeVar
import asyncio
import logging
import threading

from goalengine.agent.executor import StepExecutor
from goalengine.agent.learning import LearningSystem
from goalengine.agent.memory import KnowledgeBase, WorkingMemory
from goalengine.agent.orchestrator import GoalOrchestrator
from goalengine.agent.planner import Planner
from goalengine.agent.resources import ResourceManager, ResourceSnapshot
from goalengine.agent.tool_registry import Tool, ToolRegistry
from goalengine.agent.tools import register_builtin_tools
from goalengine.cancellation import STREAM_END
from goalengine.config import Settings
from goalengine.db.database import create_store
from goalengine.router.base import LLMProvider
from goalengine.router.registry import ProviderRegistry
from goalengine.router.router import LLMRouter

logger = logging.getLogger(__name__)

T = TypeVar("T")


def default_providers(settings: Settings) -> List[LLMProvider]:
    """Providers whose API keys are configured"""
    providers: List[LLMProvider] = []
    if settings.GROQ_API_KEY:
        from goalengine.router.groq_provider import GroqProvider
        providers.append(GroqProvider(settings))
    if settings.GOOGLE_API_KEY:
        from goalengine.router.gemini_provider import GeminiProvider
        providers.append(GeminiProvider(settings))
    if not providers:
        logger.warning("No LLM provider API keys configured; planning and chat will fail")
    return providers


class Engine:
    """Every service, wired with explicit handles"""

    def __init__(
        self,
        settings: Settings,
        providers: Optional[List[LLMProvider]] = None,
        tools: Optional[List[Tool]] = None,
        store=None,
        resource_sampler: Optional[Callable[[], ResourceSnapshot]] = None,
    ):
        self.settings = settings
        self.store = store if store is not None else create_store(settings)

        self.providers = ProviderRegistry(settings)
        for client in providers if providers is not None else default_providers(settings):
            self.providers.register(client)
        self.router = LLMRouter(self.providers, settings, store=self.store)

        self.tools = ToolRegistry()
        register_builtin_tools(self.tools, self.router, settings)
        for tool in tools or []:
            self.tools.register(tool)

        self.working_memory = WorkingMemory(default_ttl=settings.WORKING_MEMORY_TTL_SECONDS)
        self.knowledge_base = KnowledgeBase(store=self.store, half_life_seconds=settings.KNOWLEDGE_HALF_LIFE_SECONDS)
        self.resources = ResourceManager(settings, sampler=resource_sampler)
        self.planner = Planner(self.router, self.tools, settings)
        self.executor = StepExecutor(self.tools, self.working_memory, settings)
        self.learning = LearningSystem(self.knowledge_base, self.providers, settings)
        self.orchestrator = GoalOrchestrator(
            settings,
            self.planner,
            self.executor,
            self.resources,
            self.working_memory,
            self.knowledge_base,
            learning=self.learning,
            store=self.store,
        )

    async def start(self) -> None:
        await self.store.connect()
        await self.orchestrator.start()

    async def stop(self) -> None:
        await self.orchestrator.shutdown()
        await self.store.disconnect()


class EngineRuntime:
    """
    Owns the background loop thread and the Engine built on it.

    Usage:
        runtime = EngineRuntime(settings)
        goal_id = runtime.call(runtime.engine.orchestrator.submit("..."))
    """

    def __init__(self, settings: Settings, **engine_kwargs: Any):
        self.settings = settings
        self._engine_kwargs = engine_kwargs
        self._engine: Optional[Engine] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    @property
    def engine(self) -> Engine:
        self.ensure_started()
        return self._engine

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        self.ensure_started()
        return self._loop

    def ensure_started(self) -> None:
        with self._lock:
            if self._loop is not None:
                return
            loop = asyncio.new_event_loop()
            thread = threading.Thread(target=loop.run_forever, name="goalengine-loop", daemon=True)
            thread.start()
            try:
                self._engine = asyncio.run_coroutine_threadsafe(self._boot(), loop).result()
            except BaseException:
                loop.call_soon_threadsafe(loop.stop)
                thread.join()
                loop.close()
                raise
            self._loop = loop
            self._thread = thread
            logger.info("Engine runtime started")

    async def _boot(self) -> Engine:
        engine = Engine(self.settings, **self._engine_kwargs)
        await engine.start()
        return engine

    def call(self, coro: Awaitable[T], timeout: Optional[float] = None) -> T:
        """Run a coroutine on the engine loop from any other thread"""
        return asyncio.run_coroutine_threadsafe(coro, self.loop).result(timeout)

    async def call_async(self, coro: Awaitable[T]) -> T:
        """Await a coroutine on the engine loop from another event loop"""
        return await asyncio.wrap_future(asyncio.run_coroutine_threadsafe(coro, self.loop))

    def iterate(self, factory: Callable[[], Awaitable[Any]]) -> Iterator[Any]:
        """
        Synchronous view over an async iterator that lives on the engine loop.

        ``factory`` is awaited on the loop and must return an object with
        ``__anext__``, ``cancel()`` and ``aclose()`` (a RoutedStream). If the
        consumer stops early the stream is cancelled and drained.
        """
        stream = self.call(factory())
        finished = False
        try:
            while True:
                item = self.call(_anext(stream))
                if item is STREAM_END:
                    finished = True
                    return
                yield item
        finally:
            if not finished:
                self.call(_cancel_and_drain(stream))

    def shutdown(self) -> None:
        with self._lock:
            if self._loop is None:
                return
            asyncio.run_coroutine_threadsafe(self._engine.stop(), self._loop).result()
            self._loop.call_soon_threadsafe(self._loop.stop)
            self._thread.join()
            self._loop.close()
            self._loop = None
            self._thread = None
            self._engine = None
            logger.info("Engine runtime stopped")


async def _anext(iterator: AsyncIterator[Any]) -> Any:
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return STREAM_END


async def _cancel_and_drain(stream) -> None:
    stream.cancel()
    async for _ in stream:
        pass
    await stream.aclose()
