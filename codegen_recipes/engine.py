"""Recipe engine: dependency-driven, concurrent step execution."""

import asyncio
import datetime
import logging
from collections.abc import Awaitable
from collections.abc import Callable
from dataclasses import dataclass
from dataclasses import field
from pathlib import Path
from typing import Any

from .ai.answers import AnswerResolution
from .ai.answers import resolve_answers
from .ai.collector import AiCollector
from .ai.router import ModelRouter
from .ai.router import ProviderRegistry
from .ai.service import AiService
from .cancellation import CancellationRequestedError
from .cancellation import CancellationToken
from .config import EngineConfig
from .errors import ActionNotFoundError
from .errors import BudgetExceededError
from .errors import ExpressionError
from .errors import RecipeError
from .errors import RecipeValidationError
from .errors import RecursionLimitError
from .errors import StepExecutionError
from .errors import StepValidationError
from .errors import ToolNotFoundError
from .expressions import evaluate_condition
from .models import Recipe
from .models import RecursionConfig
from .models import Step
from .output import FileWriter
from .registry import ToolRegistry
from .registry import create_default_registry
from .results import RecipeResult
from .results import RecipeStatus
from .results import StepResult
from .results import StepStatus
from .results import aggregate_status
from .templates.loader import FileSystemTemplateLoader
from .templates.loader import TemplateLoader
from .templates.renderer import TemplateRenderer
from .tools.action import ActionRegistry
from .tools.base import GenerationMode
from .tools.base import StepContext
from .tools.base import Tool
from .validator import validate_recipe

logger = logging.getLogger(__name__)

_LOG_LEVELS = {"info": logging.INFO, "warning": logging.WARNING, "error": logging.ERROR}

# Errors that another attempt cannot fix
NON_RETRYABLE_ERRORS = (
    BudgetExceededError,
    RecipeValidationError,
    StepValidationError,
    ToolNotFoundError,
    ActionNotFoundError,
    RecursionLimitError,
)


def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.UTC)


@dataclass
class StepCounter:
    """Step count shared by a recipe and every recipe nested inside it."""

    value: int = 0


@dataclass
class RecursionState:
    """Track recursion across nested recipe executions."""

    current_depth: int = 0
    max_depth: int = 5
    max_total_steps: int = 100
    recipe_stack: list[str] = field(default_factory=list)
    counter: StepCounter = field(default_factory=StepCounter)

    @classmethod
    def for_recipe(cls, recipe: Recipe) -> "RecursionState":
        """Initial state for a top-level run, using the recipe's own limits."""
        config = recipe.recursion or RecursionConfig()
        return cls(max_depth=config.max_depth, max_total_steps=config.max_total_steps, recipe_stack=[recipe.name])

    @property
    def total_steps(self) -> int:
        return self.counter.value

    def check_depth(self, recipe_name: str) -> None:
        """Raise if depth limit exceeded."""
        if self.current_depth >= self.max_depth:
            raise RecursionLimitError(
                f"Recipe recursion depth {self.current_depth} exceeds limit {self.max_depth} "
                f"entering '{recipe_name}'. Stack: {' -> '.join(self.recipe_stack)}"
            )

    def check_total_steps(self) -> None:
        """Raise if total steps limit exceeded."""
        if self.counter.value > self.max_total_steps:
            raise RecursionLimitError(f"Total steps {self.counter.value} exceeds limit {self.max_total_steps}")

    def increment_steps(self) -> None:
        """Increment total steps counter and check limit."""
        self.counter.value += 1
        self.check_total_steps()

    def enter_recipe(self, recipe_name: str, override_config: RecursionConfig | None = None) -> "RecursionState":
        """
        Create child state for a nested recipe.

        Args:
            recipe_name: Name of recipe being entered
            override_config: Optional per-step recursion config override
        """
        max_depth = override_config.max_depth if override_config else self.max_depth
        max_total_steps = override_config.max_total_steps if override_config else self.max_total_steps

        return RecursionState(
            current_depth=self.current_depth + 1,
            max_depth=max_depth,
            max_total_steps=max_total_steps,
            recipe_stack=[*self.recipe_stack, recipe_name],
            counter=self.counter,
        )


class StepExecutor:
    """Runs a single step: tool resolution, validation, then attempts.

    ``validate`` runs once; ``execute`` runs up to ``retries + 1`` times with
    the step's backoff between attempts. Failures are recorded on the
    returned StepResult and never raised. A tool that stops with
    ``CancellationRequestedError`` after its run was cancelled is recorded as
    cancelled and not retried. ``asyncio.CancelledError`` propagates so the
    engine can record it.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        default_timeout: float | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.registry = registry
        self.default_timeout = default_timeout
        self._sleep = sleep

    async def run(self, step: Step, context: StepContext) -> StepResult:
        result = StepResult(step_name=step.name, tool=step.tool, status=StepStatus.RUNNING, started_at=_now())

        try:
            tool = self.registry.resolve(step.tool)
        except ToolNotFoundError as e:
            return self.fail(result, e)

        try:
            validation = await tool.validate(step, context)
        except RecipeError as e:
            return self.fail(result, e)
        except Exception as e:
            logger.error(f"Step '{step.name}' validation raised: {e}", exc_info=True)
            return self.fail(result, e)
        if not validation.is_valid:
            return self.fail(result, StepValidationError(step.name, validation.errors))
        result.messages.extend(validation.warnings)

        return await self._attempt(tool, step, context, result)

    def next_delay(self, step: Step, delay: float) -> float:
        """Delay before the attempt after one that waited ``delay``."""
        if step.retry_backoff == "exponential":
            delay = delay * 2
        else:
            delay = delay + step.retry_delay
        return min(delay, step.max_retry_delay)

    async def _attempt(self, tool: Tool, step: Step, context: StepContext, result: StepResult) -> StepResult:
        timeout = step.timeout or self.default_timeout
        max_attempts = step.retries + 1
        delay = step.retry_delay
        last_error: BaseException | None = None

        for attempt in range(1, max_attempts + 1):
            result.attempts = attempt
            try:
                if timeout:
                    output = await asyncio.wait_for(tool.execute(step, context), timeout=timeout)
                else:
                    output = await tool.execute(step, context)
            except CancellationRequestedError as e:
                if context.cancellation.is_cancelled:
                    return self.cancelled(result, str(e))
                last_error = e
            except NON_RETRYABLE_ERRORS as e:
                return self.fail(result, e)
            except asyncio.TimeoutError:
                last_error = StepExecutionError(f"Step '{step.name}' timed out after {timeout}s")
            except RecipeError as e:
                last_error = e
            except Exception as e:
                logger.error(f"Step '{step.name}' attempt {attempt}/{max_attempts} raised: {e}", exc_info=True)
                last_error = e
            else:
                result.status = StepStatus.COMPLETED
                result.value = output.value
                result.files.extend(output.files)
                result.messages.extend(output.messages)
                result.finished_at = _now()
                return result

            if attempt < max_attempts:
                logger.warning(f"Step '{step.name}' failed (attempt {attempt}/{max_attempts}), retrying in {delay}s")
                if delay > 0:
                    await self._sleep(delay)
                delay = self.next_delay(step, delay)

        return self.fail(result, last_error or StepExecutionError(f"Step '{step.name}' failed"))

    def fail(self, result: StepResult, error: BaseException) -> StepResult:
        result.status = StepStatus.FAILED
        result.error = str(error)
        result.error_type = type(error).__name__
        result.finished_at = _now()
        logger.error(f"Step '{result.step_name}' failed: {error}")
        return result

    def cancelled(self, result: StepResult, reason: str) -> StepResult:
        result.status = StepStatus.CANCELLED
        result.error = f"Cancelled while running: {reason}"
        result.finished_at = _now()
        logger.info(f"Step '{result.step_name}' stopped on cancellation: {reason}")
        return result


@dataclass
class TwoPassResult:
    """Outcome of ``RecipeEngine.run_two_pass``.

    ``result`` is the resolve pass, or the collect pass when that pass did not
    complete. ``resolution`` is None when answers were supplied by the caller.
    """

    collect: RecipeResult
    result: RecipeResult
    collector: AiCollector
    resolution: AnswerResolution | None = None

    @property
    def status(self) -> RecipeStatus:
        return self.result.status

    @property
    def success(self) -> bool:
        return self.result.success


@dataclass
class _Run:
    """Mutable state of one recipe run."""

    recipe: Recipe
    variables: dict[str, Any]
    project_root: Path
    cancellation: CancellationToken
    mode: GenerationMode
    collector: AiCollector | None
    answers: dict[str, str]
    writer: FileWriter | None
    recursion: RecursionState
    ai_service: AiService | None
    results: dict[str, StepResult] = field(default_factory=dict)
    halted: bool = False  # Set by on_error: skip_remaining


class RecipeEngine:
    """Executes recipes.

    Steps form a dependency graph. A step starts as soon as every dependency
    has finished successfully, been skipped, or failed under
    ``on_error: continue``; ready steps run concurrently up to the concurrency
    limit. A failure blocks the step's transitive dependents unless it was
    accepted.
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        registry: ToolRegistry | None = None,
        actions: ActionRegistry | None = None,
        template_loader: TemplateLoader | None = None,
        renderer: TemplateRenderer | None = None,
        ai_service: AiService | None = None,
        provider_registry: ProviderRegistry | None = None,
        writer: FileWriter | None = None,
        display: Any = None,
    ):
        """
        Initialize engine.

        Args:
            config: Engine configuration
            registry: Tool registry (defaults to the built-in tools)
            actions: Action table for ``action`` steps
            template_loader: Loader for ``template_file`` lookups
            renderer: Template renderer (shared parse cache)
            ai_service: Shared AI service; when None each run builds its own
                from the recipe's ``ai:`` block or ``config.ai``
            provider_registry: Provider plugins for runs that build their own service
            writer: Default destination for file outputs; None keeps them in results only
            display: Optional display with ``show_message(message=, level=, source=)``
        """
        self.config = config or EngineConfig()
        self.registry = registry or create_default_registry()
        self.actions = actions or ActionRegistry(self.config.action_collision_policy)  # type: ignore[arg-type]
        self.template_loader = template_loader or FileSystemTemplateLoader(self.config.template_paths)
        self.renderer = renderer or TemplateRenderer()
        self.ai_service = ai_service
        self.provider_registry = provider_registry
        self.writer = writer
        self.display = display
        self.executor = StepExecutor(self.registry, self.config.default_timeout)

    def _show_progress(self, message: str, level: str = "info") -> None:
        """
        Show progress message to user via display system.

        Args:
            message: Progress message to display
            level: Message level (info, warning, error)
        """
        logger.log(_LOG_LEVELS.get(level, logging.INFO), message)
        if self.display is not None:
            self.display.show_message(message=message, level=level, source="recipe")

    def ai_service_for(self, recipe: Recipe) -> AiService:
        """The engine's AI service, or a fresh one (with its own cost tracker) for this recipe."""
        if self.ai_service is not None:
            return self.ai_service
        config = recipe.ai or self.config.ai
        return AiService(config, router=ModelRouter(config, self.provider_registry))

    async def run(
        self,
        recipe: Recipe,
        variables: dict[str, Any] | None = None,
        *,
        project_root: Path | None = None,
        cancellation: CancellationToken | None = None,
        mode: GenerationMode = "resolve",
        collector: AiCollector | None = None,
        answers: dict[str, str] | None = None,
        writer: FileWriter | None = None,
    ) -> RecipeResult:
        """
        Execute a recipe once.

        Args:
            recipe: Recipe to run
            variables: Caller variables; they override the recipe's defaults
            project_root: Base for context globs and shell cwd (defaults to the recipe's directory)
            cancellation: Token that can cancel the run from any thread
            mode: "resolve" for a normal run, "collect" for the first template pass
            collector: Required in collect mode
            answers: Answer map for generation blocks in resolve mode
            writer: Overrides the engine's default writer for this run

        Returns:
            RecipeResult; step failures are reported there, never raised
        """
        if mode == "collect" and collector is None:
            raise ValueError("collect mode requires a collector")
        run = _Run(
            recipe=recipe,
            variables={**recipe.variables, **(variables or {})},
            project_root=self._project_root(recipe, project_root),
            cancellation=cancellation or CancellationToken(),
            mode=mode,
            collector=collector,
            answers=dict(answers or {}),
            writer=(writer or self.writer) if mode == "resolve" else None,
            recursion=RecursionState.for_recipe(recipe),
            ai_service=self.ai_service_for(recipe),
        )
        return await self._execute(run)

    async def run_two_pass(
        self,
        recipe: Recipe,
        variables: dict[str, Any] | None = None,
        answers: dict[str, str] | None = None,
        *,
        project_root: Path | None = None,
        cancellation: CancellationToken | None = None,
        writer: FileWriter | None = None,
    ) -> TwoPassResult:
        """
        Run the collect pass, generate answers, then run the resolve pass.

        The collect pass only runs tools that support it and writes nothing.
        Answers are generated for every collected block unless ``answers`` is
        given. Blocks whose generation failed render empty; their errors are
        added to the resolve result.
        """
        cancellation = cancellation or CancellationToken()
        ai_service = self.ai_service_for(recipe)
        root = self._project_root(recipe, project_root)
        base_variables = {**recipe.variables, **(variables or {})}

        collector = AiCollector()
        self._show_progress(f"🔍 Collecting AI blocks: {recipe.name}")
        collect = await self._execute(
            _Run(
                recipe=recipe,
                variables=dict(base_variables),
                project_root=root,
                cancellation=cancellation,
                mode="collect",
                collector=collector,
                answers={},
                writer=None,
                recursion=RecursionState.for_recipe(recipe),
                ai_service=ai_service,
            )
        )
        if collect.status in (RecipeStatus.FAILED, RecipeStatus.CANCELLED) or cancellation.is_cancelled:
            if cancellation.is_cancelled:
                collect.status = RecipeStatus.CANCELLED
            return TwoPassResult(collect=collect, result=collect, collector=collector)

        resolution = None
        if answers is None:
            answers = {}
            if collector.has_entries:
                self._show_progress(f"🤖 Generating {len(collector)} AI block(s)")
                resolution = await resolve_answers(collector, ai_service, self.config.answer_concurrency)
                answers = resolution.answers
                for key, error in resolution.failures.items():
                    self._show_progress(f"AI block '{key}' failed: {error}", level="warning")

        if cancellation.is_cancelled:
            collect.status = RecipeStatus.CANCELLED
            return TwoPassResult(collect=collect, result=collect, collector=collector, resolution=resolution)

        self._show_progress(f"📝 Resolving templates: {recipe.name}")
        result = await self._execute(
            _Run(
                recipe=recipe,
                variables=dict(base_variables),
                project_root=root,
                cancellation=cancellation,
                mode="resolve",
                collector=collector,
                answers=dict(answers),
                writer=writer or self.writer,
                recursion=RecursionState.for_recipe(recipe),
                ai_service=ai_service,
            )
        )
        if resolution is not None and resolution.failures:
            result.errors.extend(f"AI block '{key}': {error}" for key, error in resolution.failures.items())
            if result.status == RecipeStatus.COMPLETED:
                result.status = RecipeStatus.COMPLETED_WITH_ERRORS
        return TwoPassResult(collect=collect, result=result, collector=collector, resolution=resolution)

    async def run_nested(
        self,
        recipe: Recipe,
        variables: dict[str, Any],
        parent: StepContext,
        recursion: RecursionState,
    ) -> RecipeResult:
        """Run a recipe on behalf of a parent step.

        The child shares the parent's pass, collector, answers, AI service and
        cancellation token. It writes no files; its outputs bubble up through
        the parent step.
        """
        run = _Run(
            recipe=recipe,
            variables={**recipe.variables, **variables},
            project_root=parent.project_root,
            cancellation=parent.cancellation,
            mode=parent.mode,
            collector=parent.collector,
            answers=parent.answers,
            writer=None,
            recursion=recursion,
            ai_service=parent.ai_service,
        )
        return await self._execute(run)

    def _project_root(self, recipe: Recipe, project_root: Path | None) -> Path:
        if project_root is not None:
            return Path(project_root)
        if recipe.path is not None:
            return recipe.path.parent
        return Path.cwd()

    async def _execute(self, run: _Run) -> RecipeResult:
        recipe = run.recipe
        started_at = _now()

        validation = validate_recipe(recipe)
        for warning in validation.warnings:
            logger.warning(f"Recipe '{recipe.name}': {warning}")
        if not validation.is_valid:
            self._show_progress(f"❌ Recipe '{recipe.name}' is invalid: {'; '.join(validation.errors)}", level="error")
            return RecipeResult(
                recipe_name=recipe.name,
                status=RecipeStatus.FAILED,
                variables=run.variables,
                errors=validation.errors,
                started_at=started_at,
                finished_at=_now(),
            )

        self._show_progress(f"📋 Starting recipe: {recipe.name} ({len(recipe.steps)} steps, {run.mode} pass)")
        await self._schedule(run)

        steps = [run.results[s.name] for s in recipe.steps]
        result = RecipeResult(
            recipe_name=recipe.name,
            status=aggregate_status(steps, cancelled=run.cancellation.is_cancelled),
            steps=steps,
            variables=run.variables,
            started_at=started_at,
            finished_at=_now(),
        )
        level = "info" if result.status == RecipeStatus.COMPLETED else "warning"
        self._show_progress(f"✅ Recipe '{recipe.name}' {result.status.value}: {result.counts()}", level=level)
        return result

    async def _schedule(self, run: _Run) -> None:
        """Start ready steps as capacity allows until every step has a result."""
        limit = min(run.recipe.settings.max_concurrency, self.config.max_concurrency)
        pending = [step.name for step in run.recipe.steps]
        running: dict[asyncio.Task, Step] = {}
        cancel_wait = asyncio.ensure_future(run.cancellation.wait())

        try:
            while pending or running:
                if run.cancellation.is_cancelled or run.halted:
                    self._close_pending(run, pending)
                else:
                    self._start_ready(run, pending, running, limit)

                if not running:
                    if pending and not self._has_ready(run, pending):
                        self._close_unreachable(run, pending)
                    continue

                done, _ = await asyncio.wait([*running, cancel_wait], return_when=asyncio.FIRST_COMPLETED)
                if cancel_wait in done:
                    self._show_progress(
                        f"⚠️ Recipe '{run.recipe.name}' cancelled: {run.cancellation.reason or 'no reason given'}",
                        level="warning",
                    )
                    await self._cancel_running(run, running)
                    continue

                for task in done:
                    step = running.pop(task)
                    self._finish(run, step, task.result())
        except asyncio.CancelledError:
            await self._cancel_running(run, running)
            raise
        finally:
            cancel_wait.cancel()

    def _dependency_state(self, run: _Run, step: Step) -> str:
        """Return ready, waiting, or blocked for a pending step."""
        for dep in step.depends_on:
            dep_result = run.results.get(dep)
            if dep_result is None:
                return "waiting"
            if dep_result.status in (StepStatus.COMPLETED, StepStatus.SKIPPED):
                continue
            if dep_result.status == StepStatus.FAILED and dep_result.accepted_failure:
                continue
            return "blocked"
        return "ready"

    def _has_ready(self, run: _Run, pending: list[str]) -> bool:
        steps = {step.name: step for step in run.recipe.steps}
        return any(self._dependency_state(run, steps[name]) != "waiting" for name in pending)

    def _start_ready(self, run: _Run, pending: list[str], running: dict[asyncio.Task, Step], limit: int) -> None:
        steps = {step.name: step for step in run.recipe.steps}
        progressed = True
        while progressed:
            progressed = False
            for name in list(pending):
                if run.halted or len(running) >= limit:
                    return
                step = steps[name]
                state = self._dependency_state(run, step)
                if state == "waiting":
                    continue
                pending.remove(name)
                progressed = True
                if state == "blocked":
                    failed = [d for d in step.depends_on if not run.results[d].ok and not run.results[d].accepted_failure]
                    self._record(run, step, StepStatus.BLOCKED, f"Blocked by failed dependency: {', '.join(failed)}")
                    continue
                if not self._should_start(run, step):
                    continue
                try:
                    run.recursion.increment_steps()
                except RecursionLimitError as e:
                    self._finish(run, step, self.executor.fail(StepResult(step.name, step.tool, started_at=_now()), e))
                    continue
                task = asyncio.ensure_future(self._run_step(run, step))
                running[task] = step

    def _should_start(self, run: _Run, step: Step) -> bool:
        """Record skipped steps and failed conditions; True if the step should run."""
        if run.mode == "collect":
            try:
                supports_collect = self.registry.resolve(step.tool).supports_collect
            except ToolNotFoundError:
                supports_collect = False
            if not supports_collect:
                self._record(run, step, StepStatus.SKIPPED, "Not run during the collect pass")
                return False

        if step.when:
            try:
                if not evaluate_condition(step.when, run.variables):
                    self._record(run, step, StepStatus.SKIPPED, f"Condition false: {step.when}")
                    return False
            except ExpressionError as e:
                if run.mode == "collect":
                    # Outputs of steps skipped during collection are not available yet
                    self._record(run, step, StepStatus.SKIPPED, f"Condition not evaluable during collect: {e}")
                    return False
                result = StepResult(step.name, step.tool, started_at=_now())
                self._finish(run, step, self.executor.fail(result, e))
                return False
        return True

    async def _run_step(self, run: _Run, step: Step) -> StepResult:
        self._show_progress(f"▶ {step.name} ({step.tool})")
        context = StepContext(
            engine=self,
            recipe=run.recipe,
            variables=dict(run.variables),
            project_root=run.project_root,
            step_results=dict(run.results),
            mode=run.mode,
            collector=run.collector,
            answers=run.answers,
            ai_service=run.ai_service,
            cancellation=run.cancellation,
            recursion=run.recursion,
        )
        result = await self.executor.run(step, context)
        if result.status == StepStatus.COMPLETED and run.writer is not None and result.files:
            self._write_files(run.writer, result)
        return result

    def _write_files(self, writer: FileWriter, result: StepResult) -> None:
        for output in result.files:
            try:
                writer.write(output)
            except Exception as e:
                logger.error(f"Step '{result.step_name}': failed to write {output.path}: {e}", exc_info=True)
                self.executor.fail(result, e)
                return
            result.messages.append(f"wrote {output.path}")

    def _finish(self, run: _Run, step: Step, result: StepResult) -> None:
        """Store a finished step's result and apply its outputs or error policy."""
        run.results[step.name] = result
        if result.status == StepStatus.COMPLETED:
            if step.output:
                run.variables[step.output] = result.value
            self._show_progress(f"✓ {step.name} completed ({result.attempts} attempt(s))")
            return
        if result.status != StepStatus.FAILED:
            return

        policy = step.on_error or ("continue" if run.recipe.settings.continue_on_error else "fail")
        if policy in ("continue", "skip_remaining"):
            result.accepted_failure = True
        if policy == "skip_remaining":
            run.halted = True
        self._show_progress(f"✗ {step.name} failed: {result.error}", level="error")

    def _record(self, run: _Run, step: Step, status: StepStatus, message: str) -> None:
        now = _now()
        run.results[step.name] = StepResult(
            step_name=step.name,
            tool=step.tool,
            status=status,
            messages=[message],
            error=message if status in (StepStatus.BLOCKED, StepStatus.CANCELLED) else None,
            started_at=now,
            finished_at=now,
        )

    def _close_pending(self, run: _Run, pending: list[str]) -> None:
        """Settle every unstarted step after cancellation or skip_remaining."""
        steps = {step.name: step for step in run.recipe.steps}
        for name in pending:
            if run.cancellation.is_cancelled:
                self._record(run, steps[name], StepStatus.CANCELLED, "Cancelled before start")
            else:
                self._record(run, steps[name], StepStatus.SKIPPED, "Skipped after a skip_remaining failure")
        pending.clear()

    def _close_unreachable(self, run: _Run, pending: list[str]) -> None:
        # Steps whose dependencies can never finish; the graph check rejects these up front
        steps = {step.name: step for step in run.recipe.steps}
        for name in pending:
            self._record(run, steps[name], StepStatus.BLOCKED, "Dependencies can never complete")
        pending.clear()

    async def _cancel_running(self, run: _Run, running: dict[asyncio.Task, Step]) -> None:
        for task in running:
            task.cancel()
        await asyncio.gather(*running, return_exceptions=True)
        for task, step in running.items():
            if not task.cancelled() and task.exception() is None:
                # Finished before the cancel landed
                self._finish(run, step, task.result())
            else:
                self._record(run, step, StepStatus.CANCELLED, f"Cancelled while running: {run.cancellation.reason or 'cancelled'}")
        running.clear()
