from __future__ import annotations

import asyncio
import csv
import io
import json
import logging
import random
from typing import Any, Dict, List, Optional, Union
from uuid import UUID

from sqlalchemy import exc as sa_exc
from sqlalchemy.ext.asyncio import AsyncSession

from testdata_lifecycle.core.errors import ConflictError, NotFoundError, ValidationError
from testdata_lifecycle.core.settings import AppSettings, get_app_settings
from testdata_lifecycle.db.base import utc_now
from testdata_lifecycle.db.models.synthetic import SyntheticDataTemplate
from testdata_lifecycle.db.session import locked_repository
from testdata_lifecycle.repositories.templates import TemplateRepository
from testdata_lifecycle.repositories.test_data import RepositoryRecordRepository, TestDataRepositoryRepository
from testdata_lifecycle.schemas.synthetic import GenerationReport, OutputFormat, TemplateCreate
from testdata_lifecycle.services.base import BaseService, parse_payload
from testdata_lifecycle.services.field_generators import (
    CompiledSchema,
    FieldGenerationError,
    FieldGeneratorRegistry,
    GeneratorContext,
    default_registry,
)
from testdata_lifecycle.services.repository_store import RepositoryStore

logger = logging.getLogger(__name__)

SEED_RANGE = 2**32


# PUBLIC_INTERFACE
def render_records(records: List[Dict[str, Any]], fmt: Union[OutputFormat, str]) -> str:
    """Render generated records as json, ndjson or csv text."""
    fmt = OutputFormat(fmt)
    if fmt is OutputFormat.JSON:
        return json.dumps(records, indent=2, ensure_ascii=False)
    if fmt is OutputFormat.NDJSON:
        return "".join(json.dumps(r, ensure_ascii=False) + "\n" for r in records)
    columns: List[str] = []
    for record in records:
        for key in record:
            if key not in columns:
                columns.append(key)
    buf = io.StringIO()
    writer = csv.DictWriter(buf, fieldnames=columns, lineterminator="\n")
    writer.writeheader()
    for record in records:
        writer.writerow({k: _csv_cell(v) for k, v in record.items()})
    return buf.getvalue()


def _csv_cell(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return value


class TemplateService(BaseService):
    """Owner-scoped CRUD for synthetic data templates."""

    def __init__(self, session: AsyncSession, registry: Optional[FieldGeneratorRegistry] = None) -> None:
        super().__init__(session)
        self.registry = registry or default_registry()
        self.templates = TemplateRepository(session)

    # PUBLIC_INTERFACE
    async def create_template(
        self, owner: str, payload: Union[TemplateCreate, Dict[str, Any]]
    ) -> SyntheticDataTemplate:
        """
        Create a template after checking its schema descriptor.

        Raises:
            ValidationError: descriptor names unknown generators, bad parameters or broken references
            ConflictError: the owner already has a template with this name
        """
        data = parse_payload(TemplateCreate, payload)
        self.registry.compile(data.schema_descriptor)
        if await self.templates.get_by_name(owner, data.name) is not None:
            raise ConflictError(f"Template '{data.name}' already exists for owner {owner}")
        template = SyntheticDataTemplate(
            owner_id=owner,
            name=data.name,
            description=data.description,
            schema_descriptor=data.schema_descriptor,
            output_format=data.output_format.value,
            seed=data.seed,
        )
        try:
            await self.templates.add(template)
            await self.templates.commit()
        except sa_exc.IntegrityError as exc:
            await self.templates.rollback()
            raise ConflictError(f"Template '{data.name}' already exists for owner {owner}") from exc
        logger.info("Created template %s (%s) with %d fields", template.id, template.name, len(data.schema_descriptor))
        return template

    # PUBLIC_INTERFACE
    async def get_template(self, template_id: UUID, requester: Optional[str] = None) -> SyntheticDataTemplate:
        template = await self.templates.get_template(template_id, owner_id=requester)
        if template is None:
            raise NotFoundError("Template", template_id)
        return template

    # PUBLIC_INTERFACE
    async def list_templates(self, owner: str, limit: int = 100, offset: int = 0) -> List[SyntheticDataTemplate]:
        return await self.templates.list_templates(owner_id=owner, limit=limit, offset=offset)

    # PUBLIC_INTERFACE
    async def delete_template(self, template_id: UUID, requester: Optional[str] = None) -> None:
        template = await self.get_template(template_id, requester)
        await self.templates.delete(template)
        await self.templates.commit()
        logger.info("Deleted template %s", template_id)


class SyntheticDataGenerator(BaseService):
    """
    Produces records from a template and appends them to a repository.

    The schema is validated once before anything is written. Records are
    buffered and committed in batches of GENERATION_BATCH_SIZE, each batch in
    its own locked transaction, so a cancelled or interrupted run keeps the
    batches committed so far.
    """

    def __init__(
        self,
        session: AsyncSession,
        registry: Optional[FieldGeneratorRegistry] = None,
        settings: Optional[AppSettings] = None,
    ) -> None:
        super().__init__(session)
        self.settings = settings or get_app_settings()
        self.registry = registry or default_registry()
        self.templates = TemplateRepository(session)
        self.repos = TestDataRepositoryRepository(session)
        self.records = RepositoryRecordRepository(session)

    # PUBLIC_INTERFACE
    async def generate(
        self,
        template_id: UUID,
        repository_id: UUID,
        count: int,
        requester: Optional[str] = None,
        seed: Optional[int] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> GenerationReport:
        """
        Generate `count` records into the repository.

        A field generator raising fails that record only; the failure is
        counted and its message kept under the record index. The seed used is
        reported so the run can be reproduced.

        Raises:
            ValidationError: bad count or inconsistent template schema
            NotFoundError: template or repository absent (or not owned by requester)
            InvalidTransitionError: repository is not active
        """
        max_count = self.settings.MAX_GENERATION_COUNT
        if isinstance(count, bool) or not isinstance(count, int) or count < 0 or count > max_count:
            raise ValidationError("Invalid record count", issues=[f"count must be between 0 and {max_count}"])
        template = await self.templates.get_template(template_id, owner_id=requester)
        if template is None:
            raise NotFoundError("Template", template_id)
        schema = self.registry.compile(template.schema_descriptor)
        repo = await self.repos.get_repository(repository_id, owner_id=requester)
        repo = self.check_repository_access(repo, repository_id, requester)
        RepositoryStore.require_active(repo, "generate into")

        seed = self._choose_seed(seed, template.seed)
        report = GenerationReport(template_id=template.id, repository_id=repo.id, requested=count, seed=seed)
        ctx = GeneratorContext.for_seed(seed)
        batch_size = self.settings.GENERATION_BATCH_SIZE
        buffer: List[Dict[str, Any]] = []

        for index in range(count):
            if cancel_event is not None and cancel_event.is_set():
                report.cancelled = True
                break
            ctx.index = index
            try:
                buffer.append(schema.build_record(ctx))
            except FieldGenerationError as exc:
                report.failed += 1
                report.errors[index] = str(exc)
                logger.debug("Record %d of template %s failed: %s", index, template_id, exc)
            if len(buffer) >= batch_size:
                report.written += await self._write_batch(repository_id, requester, buffer)
                buffer = []
                await asyncio.sleep(0)
        if buffer:
            report.written += await self._write_batch(repository_id, requester, buffer)

        log = logger.warning if report.cancelled or report.failed else logger.info
        log(
            "Generated %d/%d records from template %s into repository %s (failed=%d, cancelled=%s, seed=%d)",
            report.written, count, template_id, repository_id, report.failed, report.cancelled, seed,
        )
        return report

    # PUBLIC_INTERFACE
    def preview(
        self,
        template: Union[SyntheticDataTemplate, TemplateCreate],
        count: int,
        seed: Optional[int] = None,
    ) -> str:
        """
        Render `count` records in the template's output format without writing anything.

        Records whose generation fails are left out of the preview.
        """
        schema: CompiledSchema = self.registry.compile(template.schema_descriptor)
        ctx = GeneratorContext.for_seed(self._choose_seed(seed, template.seed))
        records: List[Dict[str, Any]] = []
        for index in range(max(count, 0)):
            ctx.index = index
            try:
                records.append(schema.build_record(ctx))
            except FieldGenerationError:
                continue
        return render_records(records, template.output_format)

    async def _write_batch(self, repository_id: UUID, requester: Optional[str], batch: List[Dict[str, Any]]) -> int:
        async with locked_repository(self.session, repository_id) as repo:
            repo = self.check_repository_access(repo, repository_id, requester)
            RepositoryStore.require_active(repo, "generate into")
            start = await self.records.next_position(repo.id)
            written = await self.records.append_records(repo.id, batch, start=start)
            repo.updated_at = utc_now()
        return written

    @staticmethod
    def _choose_seed(seed: Optional[int], default: Optional[int]) -> int:
        if seed is not None:
            return seed
        if default is not None:
            return default
        return random.SystemRandom().randrange(SEED_RANGE)
