from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Iterable, Mapping, Sequence
from typing import TYPE_CHECKING, Any, Callable

from .models import (
    ChangeInfo,
    EditLocation,
    Observer,
    Reference,
    RefactorResult,
    RequestContext,
    Status,
)
from .pool import PROVIDER_NAME
from .prompts import PromptBuilder, build_refactor_prompt
from .workspace import Workspace, uri_to_path

if TYPE_CHECKING:
    from .pool import SessionPool
    from .session import Session

logger = logging.getLogger(__name__)

ChangeListener = Callable[[ChangeInfo], None]
StatusSink = Callable[[str], None]


def supports_parallel(backend: Any) -> bool:
    """True when the backend runs concurrent sessions over one agent."""
    return getattr(backend, "provider_name", None) == PROVIDER_NAME


def locations_from_references(
    references: Iterable[Reference | Mapping[str, Any]],
) -> list[EditLocation]:
    """Turn reference hits into whole-line locations sorted by (path, line).

    Hits on the same line collapse into one location.
    """
    seen: set[tuple[str, int]] = set()
    locations: list[EditLocation] = []
    for raw in references:
        reference = raw if isinstance(raw, Reference) else Reference.model_validate(raw)
        path = uri_to_path(reference.uri)
        line = reference.range.start.line + 1
        if (path, line) in seen:
            continue
        seen.add((path, line))
        locations.append(EditLocation(path=path, start_line=line, end_line=line))
    locations.sort(key=lambda location: (location.path, location.start_line))
    return locations


def response_lines(response: str) -> list[str]:
    """Split an agent answer into lines, dropping trailing empty lines."""
    lines = response.split("\n")
    while lines and lines[-1] == "":
        lines.pop()
    return lines


class RefactorOrchestrator:
    """Rewrite every usage site of a symbol with one agent conversation each.

    Backends that report the concurrent provider name get all locations at
    once (throttled to `max_sessions`); any other backend is driven one
    location at a time, last location first. Edits are applied only after
    every conversation has finished, bottom-up, and each changed file is
    saved once.
    """

    def __init__(
        self,
        backend: SessionPool,
        workspace: Workspace,
        *,
        prompt_builder: PromptBuilder = build_refactor_prompt,
        status: StatusSink | None = None,
        on_change: Iterable[ChangeListener] = (),
        model: str | None = None,
        cwd: str | None = None,
    ) -> None:
        """Create an orchestrator.

        Args:
            backend: Object exposing `make_request(query, context, observer)`.
            workspace: Line-addressed files to read, edit and save.
            prompt_builder: Builds the prompt for one location.
            status: Receives streamed agent text and `Done k/N` progress lines.
            on_change: Listeners notified after each applied replacement.
            model: Model requested for every conversation.
            cwd: Working directory announced to the agent.
        """
        self._backend = backend
        self._workspace = workspace
        self._prompt_builder = prompt_builder
        self._status = status
        self._listeners: list[ChangeListener] = list(on_change)
        self._model = model
        self._cwd = cwd

        self._active: dict[int, Session] = {}
        self._cancelled = False

    def add_change_listener(self, listener: ChangeListener) -> None:
        self._listeners.append(listener)

    async def refactor(
        self,
        references: Iterable[Reference | Mapping[str, Any]],
        *,
        additional_prompt: str | None = None,
        rules: Sequence[str] = (),
        context: RequestContext | None = None,
    ) -> RefactorResult:
        """Run one conversation per location and apply every answer.

        Failed or cancelled locations are left untouched; they never abort
        the rest of the batch.
        """
        locations = locations_from_references(references)
        if not locations:
            logger.warning("no references found")
            return RefactorResult()

        logger.debug("found references count=%d", len(locations))
        self._cancelled = False
        base = context if context is not None else RequestContext(model=self._model, cwd=self._cwd)
        scratch_files: list[str] = []
        results: dict[int, str] = {}
        failed: set[int] = set()

        try:
            if supports_parallel(self._backend):
                logger.debug("using parallel processing")
                await self._process_parallel(
                    locations, base, additional_prompt, rules, results, failed, scratch_files
                )
            else:
                logger.debug("using sequential processing")
                await self._process_sequential(
                    locations, base, additional_prompt, rules, results, failed, scratch_files
                )
            applied = self._apply_changes(locations, results, additional_prompt)
            saved = self._save_changed(applied)
        finally:
            _remove_files(scratch_files)

        logger.debug("refactor complete total=%d applied=%d", len(locations), len(applied))
        return RefactorResult(
            locations=locations,
            applied=sorted(applied, key=lambda loc: (loc.path, loc.start_line)),
            failed=[locations[index] for index in sorted(failed)],
            saved=saved,
        )

    async def cancel(self) -> None:
        """Cancel every running conversation and start no further ones."""
        self._cancelled = True
        for session in list(self._active.values()):
            await session.cancel()

    async def _process_sequential(
        self,
        locations: list[EditLocation],
        base: RequestContext,
        additional_prompt: str | None,
        rules: Sequence[str],
        results: dict[int, str],
        failed: set[int],
        scratch_files: list[str],
    ) -> None:
        total = len(locations)
        for index in range(total - 1, -1, -1):
            if self._cancelled:
                failed.add(index)
                continue
            status, payload = await self._run_location(
                index, locations[index], base, additional_prompt, rules, scratch_files
            )
            self._push_status(f"Done {total - index}/{total}")
            self._record(index, status, payload, results, failed)

    async def _process_parallel(
        self,
        locations: list[EditLocation],
        base: RequestContext,
        additional_prompt: str | None,
        rules: Sequence[str],
        results: dict[int, str],
        failed: set[int],
        scratch_files: list[str],
    ) -> None:
        total = len(locations)
        limit = getattr(self._backend, "max_sessions", None) or total
        semaphore = asyncio.Semaphore(limit)
        completed = 0

        async def _one(index: int) -> None:
            nonlocal completed
            async with semaphore:
                if self._cancelled:
                    status: Status = "cancelled"
                    payload: Any = "Request cancelled"
                else:
                    status, payload = await self._run_location(
                        index, locations[index], base, additional_prompt, rules, scratch_files
                    )
            completed += 1
            self._push_status(f"Done {completed}/{total}")
            self._record(index, status, payload, results, failed)

        logger.debug("launching parallel requests count=%d limit=%d", total, limit)
        await asyncio.gather(*(_one(index) for index in range(total)))

    async def _run_location(
        self,
        index: int,
        location: EditLocation,
        base: RequestContext,
        additional_prompt: str | None,
        rules: Sequence[str],
        scratch_files: list[str],
    ) -> tuple[Status, Any]:
        context = base.fork()
        if rules:
            context.add_context(*rules)
        scratch_files.append(context.scratch_file)

        try:
            text = self._workspace.line(location.path, location.start_line)
        except (OSError, IndexError) as exc:
            logger.warning(
                "cannot read location %s:%d: %s", location.path, location.start_line, exc
            )
            return "failed", str(exc)
        prompt = self._prompt_builder(
            location.path, location.start_line, text, additional_prompt or ""
        )

        loop = asyncio.get_running_loop()
        outcome: asyncio.Future[tuple[Status, Any]] = loop.create_future()

        def _on_complete(status: Status, payload: Any) -> None:
            if not outcome.done():
                outcome.set_result((status, payload))

        def _on_stream_error(line: str) -> None:
            logger.debug("stream error index=%d line=%s", index, line)

        observer = Observer(
            on_stream_output=self._push_status,
            on_stream_error=_on_stream_error,
            on_complete=_on_complete,
        )
        session = await self._backend.make_request(prompt, context, observer)
        if session is None:
            return await outcome

        self._active[index] = session
        try:
            if self._cancelled:
                await session.cancel()
            return await outcome
        finally:
            self._active.pop(index, None)

    def _record(
        self,
        index: int,
        status: Status,
        payload: Any,
        results: dict[int, str],
        failed: set[int],
    ) -> None:
        if status == "success":
            results[index] = payload if isinstance(payload, str) else str(payload)
            logger.debug("got response for location index=%d", index)
        elif status == "cancelled":
            logger.debug("location cancelled index=%d", index)
            failed.add(index)
        else:
            logger.warning(
                "failed to process location index=%d status=%s: %s", index, status, payload
            )
            failed.add(index)

    def _apply_changes(
        self,
        locations: list[EditLocation],
        results: dict[int, str],
        additional_prompt: str | None,
    ) -> list[EditLocation]:
        applied: list[EditLocation] = []
        for index in range(len(locations) - 1, -1, -1):
            response = results.get(index)
            if response is None:
                continue
            location = locations[index]
            lines = response_lines(response)
            if not lines:
                logger.debug("empty response, removing %s:%d", location.path, location.start_line)
            self._workspace.replace(location, lines)
            applied.append(location)
            logger.debug("applied change path=%s line=%d", location.path, location.start_line)
            self._emit_change(
                ChangeInfo(
                    path=location.path,
                    start_line=location.start_line,
                    prompt=additional_prompt,
                )
            )
        return applied

    def _save_changed(self, applied: list[EditLocation]) -> list[str]:
        saved: list[str] = []
        for location in applied:
            if location.path in saved:
                continue
            self._workspace.save(location.path)
            saved.append(location.path)
        return saved

    def _emit_change(self, change: ChangeInfo) -> None:
        for listener in self._listeners:
            try:
                listener(change)
            except Exception:
                logger.exception("change listener failed")

    def _push_status(self, line: str) -> None:
        if self._status is not None:
            self._status(line)


def _remove_files(paths: Iterable[str]) -> None:
    for path in paths:
        try:
            os.remove(path)
        except FileNotFoundError:
            continue
        except OSError as exc:
            logger.warning("failed to remove scratch file %s: %s", path, exc)
