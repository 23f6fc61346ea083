# backend/session/controller.py
"""
Session controller: owns the single engine handle and the chat state machine.

    idle -> loading -> ready | degraded | error
    ready -> generating -> ready
    degraded -> generating -> degraded
    error -> loading (retry)
    * -> idle (reset)

All transitions run on one asyncio loop. Guards are checked and set before the
first ``await`` of each operation, so concurrent triggers are rejected rather
than interleaved. Work that suspends across a reset (engine construction,
generation) compares the epoch it started in and drops its result if a reset
happened meanwhile.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set, Tuple, TypeVar

import config as cfg
from backend.core.ports import CapabilityProber, EngineFactory, EngineHandle, HardDisposable, Unloadable
from backend.llm.model_catalog import (
    CATALOG,
    ModelDescriptor,
    get_available_models,
    get_model_by_id,
    next_smaller_model,
)
from backend.llm.runtime_llama_cpp import LlamaEngineFactory
from backend.session.demo import DemoResponder
from backend.session.errors import FaultKind, SessionNotReadyError, classify_fault, storage_fault_message
from backend.session.state import (
    ChatMessage,
    EngineMode,
    LoadingProgress,
    SessionSnapshot,
    SessionStatus,
)
from backend.util.hw_detect import AcceleratorProbe, HardwareProber, is_low_resource_device
from memory.conversation import MessageStore, StorageQuotaExceededError

log = logging.getLogger("hearth.session")

T = TypeVar("T")
Listener = Callable[[SessionSnapshot], None]

QUOTA_ERROR_MESSAGE = "Chat history storage is full. Clear the conversation to keep saving new messages."


class _CancelToken:
    __slots__ = ("cancelled",)

    def __init__(self) -> None:
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class SessionController:
    def __init__(
        self,
        *,
        prober: Optional[CapabilityProber] = None,
        engine_factory: Optional[EngineFactory] = None,
        store: Optional[MessageStore] = None,
        model_id: Optional[str] = None,
        catalog: Sequence[ModelDescriptor] = CATALOG,
        system_prompt: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        context_window: Optional[int] = None,
        demo_char_delay_ms: Optional[int] = None,
        demo_responder: Optional[DemoResponder] = None,
        low_resource: Optional[bool] = None,
    ) -> None:
        s = cfg.settings
        self._prober = prober or HardwareProber()
        self._factory = engine_factory or LlamaEngineFactory()
        self._store = store or MessageStore()
        self._catalog = list(catalog)
        self._system_prompt = system_prompt if system_prompt is not None else s.system_prompt
        self._max_tokens = int(max_tokens if max_tokens is not None else s.max_tokens)
        self._temperature = float(temperature if temperature is not None else s.temperature)
        self._context_window = int(context_window if context_window is not None else s.context_window_messages)
        delay_ms = demo_char_delay_ms if demo_char_delay_ms is not None else s.demo_char_delay_ms
        self._demo_delay = max(0, int(delay_ms)) / 1000.0
        self._demo = demo_responder or DemoResponder()
        self._low_resource = low_resource

        self._selected_model_id = model_id or s.default_model_id
        self._messages: List[ChatMessage] = []
        self._status = SessionStatus.IDLE
        self._resting_status = SessionStatus.IDLE
        self._mode: Optional[EngineMode] = None
        self._progress = LoadingProgress()
        self._last_error: Optional[str] = None
        self._suggested_model_id: Optional[str] = None
        self._cached_model_id: Optional[str] = None
        self._accelerator_info: Optional[str] = None
        self._optional_feature = False

        self._engine: Optional[EngineHandle] = None
        self._release_task: Optional["asyncio.Task[None]"] = None
        self._init_in_flight = False
        self._generating = False
        self._cancel_token: Optional[_CancelToken] = None
        self._generation_done: Optional[asyncio.Event] = None
        self._construct_task: Optional["asyncio.Future[EngineHandle]"] = None
        self._epoch = 0

        self._seq = 0
        self._listeners: List[Listener] = []
        self._store_tasks: Set["asyncio.Task[Any]"] = set()

    # ---------- Observable state ----------

    @property
    def messages(self) -> Tuple[ChatMessage, ...]:
        return tuple(self._messages)

    @property
    def status(self) -> SessionStatus:
        return self._status

    @property
    def mode(self) -> Optional[EngineMode]:
        return self._mode

    @property
    def loading_progress(self) -> LoadingProgress:
        return self._progress

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    @property
    def suggested_fallback_model_id(self) -> Optional[str]:
        return self._suggested_model_id

    @property
    def cached_engine_model_id(self) -> Optional[str]:
        return self._cached_model_id

    @property
    def selected_model_id(self) -> str:
        return self._selected_model_id

    @property
    def accelerator_info(self) -> Optional[str]:
        return self._accelerator_info

    @property
    def has_engine(self) -> bool:
        return self._engine is not None

    @property
    def is_busy_loading(self) -> bool:
        return self._status is SessionStatus.LOADING

    @property
    def is_generating(self) -> bool:
        return self._status is SessionStatus.GENERATING

    @property
    def is_interactive(self) -> bool:
        return self._status in (SessionStatus.READY, SessionStatus.DEGRADED, SessionStatus.GENERATING)

    @property
    def is_degraded(self) -> bool:
        return self._mode is EngineMode.DEGRADED

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            seq=self._seq,
            status=self._status,
            mode=self._mode,
            loading_progress=self._progress,
            last_error=self._last_error,
            suggested_fallback_model_id=self._suggested_model_id,
            cached_engine_model_id=self._cached_model_id,
            selected_model_id=self._selected_model_id,
            accelerator_info=self._accelerator_info,
            messages=tuple(m.copy() for m in self._messages),
        )

    def add_listener(self, fn: Listener) -> None:
        self._listeners.append(fn)

    def remove_listener(self, fn: Listener) -> None:
        try:
            self._listeners.remove(fn)
        except ValueError:
            pass

    def _emit(self) -> None:
        self._seq += 1
        if not self._listeners:
            return
        snap = self.snapshot()
        for fn in list(self._listeners):
            try:
                fn(snap)
            except Exception as e:
                log.exception("Session listener failed: %s", e)

    # ---------- Model selection ----------

    def _low_resource_flag(self) -> bool:
        if self._low_resource is None:
            self._low_resource = is_low_resource_device()
        return self._low_resource

    def available_models(self) -> List[ModelDescriptor]:
        return get_available_models(self._optional_feature, self._low_resource_flag(), self._catalog)

    def select_model(self, model_id: str) -> None:
        if get_model_by_id(model_id, self._catalog) is None:
            raise KeyError(f"Unknown model id: {model_id}")
        if model_id != self._selected_model_id:
            log.info("Model selected | %s -> %s", self._selected_model_id, model_id)
            self._selected_model_id = model_id
            self._emit()

    async def retry_with_suggested_model(self) -> None:
        suggested = self._suggested_model_id
        if suggested is None:
            return
        self.select_model(suggested)
        await self.initialize()

    # ---------- Initialization ----------

    async def initialize(self) -> None:
        if self._init_in_flight:
            log.debug("initialize() ignored: initialization already in flight")
            return
        if self._status in (SessionStatus.LOADING, SessionStatus.DEGRADED, SessionStatus.GENERATING):
            log.debug("initialize() ignored: status=%s", self._status.value)
            return
        if self._engine is not None and self._cached_model_id == self._selected_model_id:
            log.debug("initialize() ignored: %s already loaded", self._cached_model_id)
            return

        self._init_in_flight = True
        epoch = self._epoch
        try:
            if self._engine is not None:
                log.info("Switching model | %s -> %s", self._cached_model_id, self._selected_model_id)
                await self._dispose_engine()
            # A construction orphaned by reset() must finish and be released first
            await self._await_pending_construction()
            await self._await_pending_release()
            if epoch != self._epoch:
                return
            await self._initialize(epoch)
        finally:
            if epoch == self._epoch:
                self._init_in_flight = False

    async def _initialize(self, epoch: int) -> None:
        self._status = SessionStatus.LOADING
        self._last_error = None
        self._suggested_model_id = None
        self._progress = LoadingProgress("Checking GPU support...", 5)
        self._emit()

        if self._prober.is_non_interactive_environment():
            self._enter_degraded("Non-interactive environment", "Demo mode active (non-interactive environment)")
            return

        try:
            probe = await asyncio.to_thread(self._prober.probe)
        except Exception as e:
            log.exception("Capability probe failed: %s", e)
            probe = AcceleratorProbe(accelerated=False, optional_feature_supported=False, error_reason=str(e))
        if epoch != self._epoch:
            return

        self._optional_feature = bool(probe.optional_feature_supported)
        if not probe.accelerated:
            self._enter_degraded(probe.error_reason or "No GPU available", "Demo mode active - no GPU detected")
            return

        model_id = self._selected_model_id
        self._mode = EngineMode.ACCELERATED
        self._accelerator_info = probe.vendor_info or "GPU detected"
        self._progress = LoadingProgress("Loading AI model...", 10)
        self._emit()

        def on_progress(fraction: float, text: str) -> None:
            if epoch != self._epoch:
                return
            fraction = min(max(float(fraction), 0.0), 1.0)
            self._progress = LoadingProgress(text, round(10 + fraction * 90))
            self._emit()

        task = asyncio.ensure_future(self._factory.construct(model_id, on_progress))
        self._construct_task = task
        try:
            handle = await task
        except Exception as e:
            if epoch != self._epoch:
                log.info("Engine construction failed after reset; ignoring: %s", e)
                return
            self._handle_init_failure(model_id, e)
            return

        if epoch != self._epoch:
            log.info("Session reset while loading %s; releasing the new engine.", model_id)
            await self._track_release(handle)
            return

        self._engine = handle
        self._cached_model_id = model_id
        self._suggested_model_id = None
        self._status = SessionStatus.READY
        self._resting_status = SessionStatus.READY
        self._progress = LoadingProgress("Model loaded successfully!", 100)
        log.info("✅ Engine ready | model=%s accelerator=%s", model_id, self._accelerator_info)
        self._emit()

    def _enter_degraded(self, reason: str, progress_text: str) -> None:
        log.info("🟡 Entering demo mode: %s", reason)
        self._mode = EngineMode.DEGRADED
        self._status = SessionStatus.DEGRADED
        self._resting_status = SessionStatus.DEGRADED
        self._accelerator_info = reason
        self._progress = LoadingProgress(progress_text, 100)
        self._emit()

    def _handle_init_failure(self, model_id: str, exc: BaseException) -> None:
        kind = classify_fault(exc)
        text = str(exc) or exc.__class__.__name__
        log.warning("Engine initialization failed | model=%s kind=%s error=%s", model_id, kind.value, text)

        if kind is FaultKind.ACCELERATOR:
            self._enter_degraded(text, "Demo mode active - GPU initialization failed")
            return

        if kind is FaultKind.RESOURCE_EXHAUSTION:
            failed = get_model_by_id(model_id, self._catalog)
            smaller = next_smaller_model(model_id, self._optional_feature, self._low_resource_flag(), self._catalog)
            if smaller is None:
                self._enter_degraded(
                    f"Not enough memory to load {failed.name if failed else model_id} and no smaller model is available",
                    "Demo mode active - insufficient memory",
                )
                return
            self._suggested_model_id = smaller.id
            self._last_error = (
                f"Not enough memory to load {failed.name if failed else model_id}. "
                f"Try {smaller.name} instead ({smaller.mem_req_mb:.0f} MB)."
            )
        elif kind is FaultKind.STORAGE_ACCESS:
            self._last_error = storage_fault_message(text)
        else:
            self._last_error = text

        self._status = SessionStatus.ERROR
        self._emit()

    # ---------- Disposal ----------

    async def _release(self, handle: EngineHandle) -> None:
        """Graceful unload if offered, else hard dispose. Never raises."""
        try:
            if isinstance(handle, Unloadable):
                result = handle.unload()
            elif isinstance(handle, HardDisposable):
                result = handle.dispose()
            else:
                log.debug("Engine exposes no shutdown capability; nothing to release.")
                return
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            log.warning("Engine disposal failed; dropping the handle anyway: %s", e)

    async def _dispose_engine(self) -> None:
        handle = self._engine
        if handle is None:
            return
        if self._cancel_token is not None:
            self._cancel_token.cancel()
        self._engine = None
        self._cached_model_id = None
        await self._track_release(handle)

    async def _track_release(self, handle: EngineHandle) -> None:
        task = asyncio.ensure_future(self._release_after_generation(handle))
        self._release_task = task
        await task

    async def _release_after_generation(self, handle: EngineHandle) -> None:
        # The stream may be inside a blocking token pull on this handle
        await self._wait_for_generation()
        await self._release(handle)

    async def _wait_for_generation(self) -> None:
        done = self._generation_done
        if done is not None and not done.is_set():
            await done.wait()

    async def _await_pending_release(self) -> None:
        task = self._release_task
        if task is not None and not task.done():
            await task

    async def _await_pending_construction(self) -> None:
        task = self._construct_task
        if task is not None and not task.done():
            # The task that started it retrieves the result or exception
            await asyncio.wait([task])

    # ---------- Generation ----------

    async def send_message(self, content: str) -> bool:
        """
        Append ``content`` and stream the reply. Returns False, leaving the
        conversation untouched, when another generation is still running.
        """
        while self._generating:
            token = self._cancel_token
            if token is None or not token.cancelled:
                log.info("send_message() rejected: generation already in flight")
                return False
            # A stopped stream may still be finishing its last token pull
            await self._wait_for_generation()
        if self._status not in (SessionStatus.READY, SessionStatus.DEGRADED):
            raise SessionNotReadyError(f"Cannot send a message while the session is {self._status.value}")
        degraded = self._status is SessionStatus.DEGRADED
        engine = self._engine
        if not degraded and engine is None:
            raise SessionNotReadyError("Engine not ready")

        token = _CancelToken()
        done = asyncio.Event()
        self._cancel_token = token
        self._generation_done = done
        self._generating = True
        self._resting_status = self._status
        epoch = self._epoch

        prior = list(self._messages)
        self._messages.append(ChatMessage.new("user", content))
        assistant = ChatMessage.new("assistant")
        self._messages.append(assistant)
        self._status = SessionStatus.GENERATING
        self._last_error = None
        self._emit()
        self._schedule_save()

        try:
            if engine is None:
                await self._stream_demo(assistant, token)
            else:
                await self._stream_engine(engine, prior, content, assistant, token)
        except Exception as e:
            log.exception("Generation failed: %s", e)
            if epoch == self._epoch:
                self._last_error = str(e) or "Failed to generate response"
        finally:
            done.set()
            if epoch == self._epoch:
                self._generating = False
                if self._cancel_token is token:
                    self._cancel_token = None
                if self._status is SessionStatus.GENERATING:
                    self._status = self._resting_status
            self._emit()
            self._schedule_save()
        return True

    async def _stream_demo(self, assistant: ChatMessage, token: _CancelToken) -> None:
        response = self._demo.next_response()
        for i in range(len(response) + 1):
            if token.cancelled:
                return
            await asyncio.sleep(self._demo_delay)
            if token.cancelled:
                return
            assistant.content = response[:i]
            self._emit()

    def build_context_window(self, prior: Sequence[ChatMessage], content: str) -> List[Dict[str, str]]:
        recent = list(prior)[-self._context_window:] if self._context_window > 0 else []
        window = [{"role": "system", "content": self._system_prompt}]
        window.extend({"role": m.role, "content": m.content} for m in recent)
        window.append({"role": "user", "content": content})
        return window

    async def _stream_engine(
        self,
        engine: EngineHandle,
        prior: Sequence[ChatMessage],
        content: str,
        assistant: ChatMessage,
        token: _CancelToken,
    ) -> None:
        window = self.build_context_window(prior, content)
        stream = engine.stream_completion(window, self._max_tokens, self._temperature)
        try:
            async for delta in stream:
                if token.cancelled:
                    break
                assistant.content += delta
                self._emit()
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

    def stop_generation(self) -> None:
        token = self._cancel_token
        if not self._generating or token is None:
            return
        token.cancel()
        if self._status is SessionStatus.GENERATING:
            self._status = self._resting_status
            self._emit()

    # ---------- Conversation ----------

    async def clear_messages(self) -> None:
        self._messages = []
        self._emit()
        await self._enqueue(self._store.clear())

    async def restore_messages(self) -> int:
        """Load persisted history into an empty conversation. Returns the number restored."""
        loaded = await self._enqueue(self._store.load())
        if self._messages:
            log.info("Conversation already has messages; skipping history restore.")
            return 0
        self._messages = list(loaded)
        if loaded:
            log.info("Restored %d messages from history.", len(loaded))
            self._emit()
        return len(loaded)

    def _schedule_save(self) -> "asyncio.Task[None]":
        return self._enqueue(self._store.save([m.copy() for m in self._messages]))

    def _enqueue(self, coro: Awaitable[T]) -> "asyncio.Task[T]":
        # Tasks start in creation order, which keeps store calls FIFO
        task = asyncio.ensure_future(coro)
        self._store_tasks.add(task)
        task.add_done_callback(self._on_store_done)
        return task

    def _on_store_done(self, task: "asyncio.Task[Any]") -> None:
        self._store_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if isinstance(exc, StorageQuotaExceededError):
            self._last_error = QUOTA_ERROR_MESSAGE
            self._emit()
        elif exc is not None:
            log.error("History operation failed: %s", exc)

    async def flush(self) -> None:
        """Wait for queued history operations."""
        while self._store_tasks:
            await asyncio.gather(*list(self._store_tasks), return_exceptions=True)

    # ---------- Reset / teardown ----------

    async def reset(self) -> None:
        self._epoch += 1
        if self._cancel_token is not None:
            self._cancel_token.cancel()
            self._cancel_token = None
        self._generating = False
        self._init_in_flight = False

        handle, self._engine = self._engine, None
        self._status = SessionStatus.IDLE
        self._resting_status = SessionStatus.IDLE
        self._mode = None
        self._progress = LoadingProgress()
        self._last_error = None
        self._suggested_model_id = None
        self._cached_model_id = None
        self._accelerator_info = None
        log.info("Session reset.")
        self._emit()

        if handle is not None:
            await self._track_release(handle)

    async def aclose(self) -> None:
        if self._cancel_token is not None:
            self._cancel_token.cancel()
        handle, self._engine = self._engine, None
        self._cached_model_id = None
        if handle is not None:
            await self._track_release(handle)
        await self.flush()
