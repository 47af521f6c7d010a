"""Phase sequencer: materializes a template phase by phase.

Phases run strictly in order. Resources within one phase do not depend on
each other, so they are materialized concurrently on a thread pool; the
phase finishes (or fails) before the next one starts. Results keep
template order regardless of completion order.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

from common import RetryTimeoutError, do_retry_with_timeout
from config import DriverConfig
from errors import DriverError, ScheduleFailure
from lifecycle.context import Context, ScheduleOptions, Stage
from lifecycle.materializer import Materializer
from resources import PHASE_ORDER, Phase, Resource
from templates import AppTemplate

logger = logging.getLogger(__name__)


class PhaseSequencer:
    """Drives a Materializer through the creation phases."""

    def __init__(self, materializer: Materializer, config: DriverConfig) -> None:
        self.materializer = materializer
        self.config = config

    def _with_retry(self, fn, app_key: str, what: str):
        """Call fn until it succeeds, fails terminally, or the object-create timeout passes."""
        timeout = self.config.timeouts.object_create

        def op():
            try:
                return fn(), False, None
            except DriverError as e:
                return None, e.retryable, e

        try:
            return do_retry_with_timeout(op, timeout, self.config.retry_interval)
        except RetryTimeoutError as e:
            cause = e.last_error.cause if isinstance(e.last_error, DriverError) else str(e)
            raise ScheduleFailure(app_key, f"{what}: {cause} (gave up after {timeout}s)") from e

    def _create(self, resource: Resource, namespace: str, app_key: str,
                options: ScheduleOptions) -> Resource:
        return self._with_retry(
            lambda: self.materializer.materialize(resource, namespace, app_key, options),
            app_key, f"{resource.kind.value} {resource.name}",
        )

    def _run_phase(self, phase: Phase, resources: list[Resource], namespace: str,
                   app_key: str, options: ScheduleOptions) -> tuple[list[Resource], Optional[DriverError]]:
        """Materialize one phase's resources.

        Returns:
            (live resources that succeeded, first error in template order)
        """
        logger.debug(f"[{app_key}] Phase {phase.name}: {len(resources)} resource(s)")
        workers = min(self.config.phase_workers, len(resources))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f'{app_key}-{phase.name.lower()}') as pool:
            futures = [pool.submit(self._create, r, namespace, app_key, options) for r in resources]

        live: list[Resource] = []
        first_error: Optional[DriverError] = None
        for future in futures:
            try:
                live.append(future.result())
            except DriverError as e:
                logger.error(f"[{app_key}] {e}")
                if first_error is None:
                    first_error = e
        return live, first_error

    def materialize_template(self, ctx: Context, template: AppTemplate,
                             options: Optional[ScheduleOptions] = None) -> list[Resource]:
        """Create every resource of template in ctx's namespace, appending to ctx.

        options default to the ones ctx was scheduled with.

        Raises:
            ScheduleFailure: First failure of the first failing phase, with
                ctx attached as .context
        """
        options = options or ctx.options
        namespace = ctx.namespace
        app_key = template.key
        by_phase: dict[Phase, list[Resource]] = {phase: [] for phase in PHASE_ORDER}
        for resource in template.resources:
            by_phase[resource.phase].append(resource)

        try:
            self._with_retry(lambda: self.materializer.ensure_namespace(namespace, app_key),
                             app_key, f"Namespace {namespace}")
        except DriverError as e:
            e.context = ctx
            raise

        created: list[Resource] = []
        for phase in PHASE_ORDER:
            if not by_phase[phase]:
                continue
            live, err = self._run_phase(phase, by_phase[phase], namespace, app_key, options)
            ctx.extend(live)
            created.extend(live)
            if err is not None:
                err.context = ctx
                raise err
        logger.info(f"[{app_key}] Materialized {len(created)} resource(s) in {namespace}")
        return created

    def schedule(self, template: AppTemplate, instance_id: str, options: ScheduleOptions) -> Context:
        """Materialize template as a new context.

        Raises:
            ScheduleFailure: If any phase fails (no rollback is attempted)
        """
        ctx = Context(uid=instance_id, app=template, options=options)
        with ctx.transition(Stage.MATERIALIZING):
            self.materialize_template(ctx, template)
        return ctx

    def add_tasks(self, ctx: Context, templates: list[AppTemplate],
                  options: Optional[ScheduleOptions] = None) -> Context:
        """Materialize more templates into an existing context and namespace.

        The added resources use options when given, else ctx.options.
        """
        with ctx.transition(Stage.MATERIALIZING):
            for template in templates:
                self.materialize_template(ctx, template, options)
        return ctx
