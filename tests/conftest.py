"""
Shared test fixtures.

Redis is fakeredis, the relational store is a temporary SQLite file and the
provider and extractor are in-memory fakes, so the whole pipeline runs
in-process.
"""

import asyncio
import uuid
from decimal import Decimal
from typing import Awaitable, Callable, Optional

import pytest
import pytest_asyncio
from fakeredis import FakeAsyncRedis, FakeServer

from app.config import Settings
from app.errors import ProviderError
from app.extraction.base import FieldExtractor
from app.models.database import init_models, make_engine, make_session_factory
from app.models.enums import RenditionFormat
from app.models.tables import TenantCustomer
from app.pipeline.orchestrator import build_pipeline
from app.schemas.batches import BatchDocument, ExtractedFields
from app.schemas.invoices import InvoiceDraft, ProviderInvoice
from app.state.store import BatchStateStore
from app.storage.artifact_store import ArtifactStore
from app.storage.paths import upload_path

TENANT = "tenant-1"
OWNER = "chat-42"

CUSTOMERS = [
    # legal name, short code, provider id, withholding eligible
    ("PROTECCION S.O.S. JURIDICO", "SOS", "cus_sos", True),
    ("ARSA ASESORIA INTEGRAL PROFESIONAL", "ARSA", "cus_arsa", False),
    ("INFOASIST INFORMACION Y ASISTENCIA", "INFO", "cus_info", True),
]


def make_fields(
    customer: Optional[str] = "SOS",
    order: Optional[str] = "4500000001",
    amount: Optional[str] = "1000.00",
    confidence: int = 100,
    errors: Optional[list[str]] = None,
) -> ExtractedFields:
    return ExtractedFields(
        customer_ref=customer,
        order_ref=order,
        amount=Decimal(amount) if amount is not None else None,
        confidence=confidence,
        errors=errors or [],
    )


class FakeProvider:
    """Records every draft. Failures are scripted per folio, consumed in order."""

    def __init__(self):
        self.calls: list[InvoiceDraft] = []
        self.failures: dict[int, list[ProviderError]] = {}
        self.missing_renditions: set[str] = set()
        self.on_submit: Optional[Callable[[InvoiceDraft], Awaitable[None]]] = None
        self.delay = 0.0
        self.in_flight = 0
        self.peak_in_flight = 0

    def fail(self, folio: int, *errors: ProviderError) -> None:
        self.failures.setdefault(folio, []).extend(errors)

    @property
    def folios(self) -> list[int]:
        return [draft.folio for draft in self.calls]

    async def submit(self, draft: InvoiceDraft) -> ProviderInvoice:
        self.calls.append(draft)
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.on_submit is not None:
                await self.on_submit(draft)
            script = self.failures.get(draft.folio)
            if script:
                raise script.pop(0)
        finally:
            self.in_flight -= 1
        return ProviderInvoice(
            provider_invoice_id=f"inv_{draft.series}{draft.folio}",
            series=draft.series,
            folio_number=draft.folio,
        )

    async def fetch_rendition(self, provider_invoice_id: str, fmt: RenditionFormat) -> bytes:
        if provider_invoice_id in self.missing_renditions:
            raise ProviderError("rendition not found", retryable=False, status_code=404)
        return f"{fmt.value}:{provider_invoice_id}".encode()

    async def close(self) -> None:
        pass


class FakeExtractor(FieldExtractor):
    """Returns the fields registered for a document's bytes."""

    extractor_name = "fake"

    def __init__(self):
        self.results: dict[bytes, object] = {}
        self.hook: Optional[Callable[[bytes], Awaitable[None]]] = None
        self.delay = 0.0

    def register(self, data: bytes, result) -> None:
        self.results[data] = result

    async def extract(self, data: bytes) -> ExtractedFields:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.hook is not None:
            await self.hook(data)
        result = self.results.get(data)
        if isinstance(result, Exception):
            raise result
        if result is None:
            return ExtractedFields(confidence=0, errors=["unreadable"])
        return result


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    return Settings(
        ARTIFACT_ROOT=str(tmp_path / "artifacts"),
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'invoicing.db'}",
        PROVIDER_RETRY_BASE_SECONDS=0.0,
        PROVIDER_RETRY_MAX_SECONDS=0.0,
        ANALYSIS_ITEM_TIMEOUT_SECONDS=2.0,
        RUN_JOBS_INLINE=True,
    )


@pytest_asyncio.fixture
async def redis_client():
    client = FakeAsyncRedis(server=FakeServer())
    yield client
    await client.aclose()


@pytest_asyncio.fixture
async def state_store(redis_client) -> BatchStateStore:
    return BatchStateStore(redis_client, prefix="batch", default_ttl=3600)


@pytest_asyncio.fixture
async def session_factory(test_settings):
    engine = make_engine(test_settings.DATABASE_URL)
    await init_models(bind=engine)
    factory = make_session_factory(engine)
    async with factory() as session:
        session.add_all([
            TenantCustomer(
                tenant_id=TENANT,
                legal_name=legal_name,
                short_code=short_code,
                provider_customer_id=provider_id,
                withholding_eligible=eligible,
            )
            for legal_name, short_code, provider_id, eligible in CUSTOMERS
        ])
        session.add(TenantCustomer(
            tenant_id="tenant-2",
            legal_name="PROTECCION S.O.S. JURIDICO",
            short_code="SOS",
            provider_customer_id="cus_other_tenant",
        ))
        await session.commit()
    yield factory
    await engine.dispose()


@pytest.fixture
def artifact_store(test_settings) -> ArtifactStore:
    return ArtifactStore(root=test_settings.ARTIFACT_ROOT)


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def fake_extractor() -> FakeExtractor:
    return FakeExtractor()


@pytest_asyncio.fixture
async def make_pipeline(test_settings, session_factory, redis_client, fake_provider, fake_extractor, artifact_store):
    """Build pipelines over the shared fakes. Keyword arguments override settings."""
    built = []

    def _make(**overrides):
        pipeline = build_pipeline(
            config=test_settings.model_copy(update=overrides),
            session_factory=session_factory,
            redis=redis_client,
            provider=fake_provider,
            extractor=fake_extractor,
            artifact_store=artifact_store,
        )
        built.append(pipeline)
        return pipeline

    yield _make
    for pipeline in built:
        await pipeline.close()


@pytest_asyncio.fixture
async def pipeline(make_pipeline):
    return make_pipeline()


@pytest.fixture
def make_documents(artifact_store, fake_extractor):
    """
    Store one upload per outcome and register what the extractor should return
    for it. An outcome is ExtractedFields, an Exception to raise, or None for an
    unreadable document.
    """

    def _make(outcomes: list, group_id: str = "group-1", owner_id: str = OWNER) -> list[BatchDocument]:
        documents = []
        for i, outcome in enumerate(outcomes):
            data = f"%PDF-1.4 fake {uuid.uuid4().hex}".encode()
            fake_extractor.register(data, outcome)
            name = f"pedido_{i}.pdf"
            path = artifact_store.save_bytes(upload_path(owner_id, group_id, name), data)
            documents.append(BatchDocument(
                name=name,
                content_type="application/pdf",
                size_bytes=len(data),
                source_uri=path,
            ))
        return documents

    return _make
