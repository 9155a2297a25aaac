"""
Tests for session persistence.

The SQL repository runs against an in-memory SQLite database shared
through a static pool.
"""

from collections.abc import AsyncGenerator
from datetime import timezone

import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from conftest import make_config, make_draft
from fixloop.core.database import init_db
from fixloop.core.engine.domain import (
    AttemptOutcome,
    AttemptRecord,
    Checkpoint,
    ControlSignal,
    Issue,
    IssueCategory,
    IssueSeverity,
    IssueStatus,
    Session,
    SessionStatus,
    utcnow,
)
from fixloop.core.engine.metrics import SessionMetrics
from fixloop.core.persistence import SqlAlchemyRepository


@pytest_asyncio.fixture
async def sql_repository() -> AsyncGenerator[SqlAlchemyRepository, None]:
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    await init_db(bind=engine)
    factory = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    yield SqlAlchemyRepository(factory)
    await engine.dispose()


def sample_session(**kwargs) -> Session:
    return Session(repository_path="/tmp/repo", config=make_config(concurrency=2), **kwargs)


class TestSqlAlchemyRepository:

    async def test_session_round_trip(self, sql_repository: SqlAlchemyRepository):
        session = sample_session(
            status=SessionStatus.PAUSED,
            control_signal=ControlSignal.RESUME,
            base_branch="main",
            cleaning_branch="fixloop/session-abcd1234",
            started_at=utcnow(),
            total_issues=3,
            resolved_issues=1,
        )
        await sql_repository.save_session(session)

        loaded = await sql_repository.load_session(session.id)

        assert loaded.id == session.id
        assert loaded.status == SessionStatus.PAUSED
        assert loaded.control_signal == ControlSignal.RESUME
        assert loaded.config == session.config
        assert loaded.config.concurrency == 2
        assert loaded.cleaning_branch == "fixloop/session-abcd1234"
        assert loaded.started_at.tzinfo is not None
        assert loaded.started_at.astimezone(timezone.utc) == session.started_at
        assert loaded.pending_issues == 2

        assert await sql_repository.load_session("missing") is None

    async def test_save_is_an_upsert(self, sql_repository: SqlAlchemyRepository):
        session = sample_session()
        await sql_repository.save_session(session)
        session.status = SessionStatus.RUNNING
        session.error_message = "something"
        await sql_repository.save_session(session)

        (loaded,) = await sql_repository.list_sessions()
        assert loaded.status == SessionStatus.RUNNING
        assert loaded.error_message == "something"

    async def test_issues_in_sequence_order(self, sql_repository: SqlAlchemyRepository):
        session = sample_session()
        await sql_repository.save_session(session)
        second = Issue.from_draft(make_draft("b", "b.py", column=4), session.id, 2)
        first = Issue.from_draft(
            make_draft(
                "a", "a.py",
                severity=IssueSeverity.CRITICAL,
                category=IssueCategory.SECURITY,
                rule="B101",
            ),
            session.id,
            1,
        )
        await sql_repository.save_issues([second, first])

        first.status = IssueStatus.RESOLVED
        first.commit_hash = "abc123"
        first.resolved_at = utcnow()
        await sql_repository.save_issue(first)

        loaded = await sql_repository.load_issues(session.id)
        assert [i.message for i in loaded] == ["a", "b"]
        assert loaded[0].status == IssueStatus.RESOLVED
        assert loaded[0].severity == IssueSeverity.CRITICAL
        assert loaded[0].category == IssueCategory.SECURITY
        assert loaded[0].rule == "B101"
        assert loaded[0].commit_hash == "abc123"
        assert loaded[1].column == 4

    async def test_checkpoints_and_delete(self, sql_repository: SqlAlchemyRepository):
        session = sample_session()
        await sql_repository.save_session(session)
        checkpoints = [
            Checkpoint(
                session_id=session.id,
                commit_hash=f"{i:040x}",
                tag=f"fixloop-cp-{i}",
                branch="fixloop/session-x",
                description=f"Checkpoint {i}",
                issue_progress={"total": 2, "resolved": i},
                metrics={"commits": i},
            )
            for i in range(3)
        ]
        for checkpoint in checkpoints:
            await sql_repository.save_checkpoint(checkpoint)

        await sql_repository.delete_checkpoint(checkpoints[1].id)
        loaded = await sql_repository.load_checkpoints(session.id)

        assert [c.description for c in loaded] == ["Checkpoint 0", "Checkpoint 2"]
        assert loaded[1].issue_progress == {"total": 2, "resolved": 2}
        assert loaded[1].metrics == {"commits": 2}
        assert loaded[0].created_at.tzinfo is not None

    async def test_attempts_and_latest_metrics(self, sql_repository: SqlAlchemyRepository):
        session = sample_session()
        await sql_repository.save_session(session)
        issue = Issue.from_draft(make_draft("a"), session.id, 1)
        await sql_repository.save_issue(issue)

        await sql_repository.save_attempt(AttemptRecord(
            session_id=session.id,
            issue_id=issue.id,
            attempt=1,
            outcome=AttemptOutcome.VERIFICATION_FAILED,
            verification_status="fail",
            tokens_used=200,
            files=["a.py"],
        ))
        (record,) = await sql_repository.load_attempts(session.id)
        assert record.outcome == AttemptOutcome.VERIFICATION_FAILED
        assert record.files == ["a.py"]

        assert await sql_repository.load_metrics(session.id) is None
        await sql_repository.save_metrics(session.id, SessionMetrics(session_id=session.id, total_issues=1))
        await sql_repository.save_metrics(
            session.id,
            SessionMetrics(session_id=session.id, total_issues=1, resolved_issues=1, provider_cost_usd=0.0006),
        )
        latest = await sql_repository.load_metrics(session.id)
        assert latest.resolved_issues == 1
        assert latest.provider_cost_usd == 0.0006


class TestInMemoryRepository:

    async def test_stores_copies(self, repository):
        session = sample_session()
        await repository.save_session(session)
        session.status = SessionStatus.FAILED

        loaded = await repository.load_session(session.id)
        assert loaded.status == SessionStatus.PENDING
        loaded.status = SessionStatus.RUNNING
        assert (await repository.load_session(session.id)).status == SessionStatus.PENDING
