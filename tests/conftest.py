import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from esg_builder.core import hierarchy
from esg_builder.core.assembler import freeze_question
from esg_builder.database import Base, enable_sqlite_foreign_keys, get_db_session
from esg_builder.main import app
from esg_builder.models import Answer, Lever, Pillar, Response, Survey, VariableQuestion

SCORED_OPTIONS = [
    {"text": "None", "absoluteScore": 0},
    {"text": "Partial", "absoluteScore": 4},
    {"text": "Full", "absoluteScore": 10},
]


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    enable_sqlite_foreign_keys(engine.sync_engine)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(
        bind=engine, class_=AsyncSession, autoflush=False, expire_on_commit=False
    )


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
async def pillar(session):
    pillar = Pillar(name="Environmental", weightage=1.0)
    session.add(pillar)
    await session.commit()
    return pillar


@pytest.fixture
async def lever(session, pillar):
    lever = Lever(pillar_id=pillar.id, name="Emissions", weightage=1.0)
    session.add(lever)
    await session.commit()
    return lever


@pytest.fixture
def make_variable(session):
    async def _make(name, parent=None, lever=None, **kwargs):
        return await hierarchy.create_variable(
            session,
            name,
            parent_id=parent.id if parent is not None else None,
            lever_id=lever.id if lever is not None else None,
            **kwargs,
        )

    return _make


@pytest.fixture
def make_question(session):
    async def _make(variable, text="Question", weightage=1.0, type="single_select", **kwargs):
        options = kwargs.pop("options", None if type == "text" else SCORED_OPTIONS)
        question = VariableQuestion(
            variable_id=variable.id,
            text=text,
            type=type,
            options=options,
            weightage=weightage,
            **kwargs,
        )
        session.add(question)
        await session.commit()
        return question

    return _make


@pytest.fixture
def record_answers(session):
    """Freeze the given questions into a survey and store one scored answer each."""

    async def _record(scores):
        survey = Survey(title="Scoring run", is_published=True)
        session.add(survey)
        await session.flush()
        response = Response(survey_id=survey.id, respondent_id="respondent-1")
        session.add(response)
        await session.flush()
        for order, (question, score) in enumerate(scores, start=1):
            frozen = freeze_question(question, survey.id, order)
            session.add(frozen)
            await session.flush()
            session.add(
                Answer(
                    response_id=response.id,
                    survey_question_id=frozen.id,
                    value="recorded",
                    score=score,
                )
            )
        await session.commit()
        return response

    return _record


@pytest.fixture
async def client(session_factory):
    async def override_get_db_session():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db_session] = override_get_db_session
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
