"""Pytest configuration and fixtures."""

import pytest
from sqlalchemy.orm import sessionmaker

import orchestrator.models  # noqa: F401
from orchestrator.config import Settings
from orchestrator.database import Base, make_engine
from orchestrator.models.client import Client
from orchestrator.models.form import FormResponse, GeneratedForm
from orchestrator.models.job import Job
from orchestrator.processors.base import StageInvokers
from orchestrator.runtime import build_runtime
from orchestrator.workflow import CANONICAL_SEQUENCE, WorkflowStatus

from fakes import START, FakeAIService, FakeClock, FakeNotifier, FakeRenderer


@pytest.fixture(scope="function")
def engine(tmp_path):
    """File-backed SQLite engine; sessions on different threads share it."""
    engine = make_engine(f"sqlite:///{tmp_path / 'orchestrator.db'}")
    Base.metadata.create_all(engine)

    yield engine

    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="function")
def test_db(session_factory):
    """Create a test database session for each test."""
    db = session_factory()

    yield db

    db.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        DATABASE_URL="sqlite://",
        MIN_PROCESSES_TO_ADVANCE=5,
        CONSULTANT_EMAIL="consultant@example.com",
        ADMIN_ALERT_EMAIL="",
        WORKER_POLL_INTERVAL=1,
    )


@pytest.fixture
def invokers():
    return StageInvokers(ai=FakeAIService(), renderer=FakeRenderer(), notifier=FakeNotifier())


@pytest.fixture
def runtime(session_factory, invokers, test_settings, clock):
    return build_runtime(session_factory, invokers, app_settings=test_settings, clock=clock)


@pytest.fixture
def make_client(test_db, runtime):
    """Create a client and walk it forward to `status` through real transitions."""

    def _make_client(status=WorkflowStatus.CREATED, name="Acme Logistics", email="ops@acme.example"):
        client = Client(name=name, contact_email=email)
        test_db.add(client)
        test_db.flush()

        target = CANONICAL_SEQUENCE.index(WorkflowStatus(status))
        for current, following in zip(CANONICAL_SEQUENCE[:target], CANONICAL_SEQUENCE[1 : target + 1]):
            runtime.workflow.request_transition(test_db, client.id, current, following, "test_setup")
        test_db.commit()
        return client.id

    return _make_client


@pytest.fixture
def make_form(test_db):
    def _make_form(client_id, external_form_id="tally-form-1", total_questions=10, status="sent"):
        form = GeneratedForm(
            client_id=client_id,
            external_form_id=external_form_id,
            total_questions=total_questions,
            status=status,
        )
        test_db.add(form)
        test_db.commit()
        return form.id

    return _make_form


@pytest.fixture
def make_form_response(test_db, make_form):
    def _make_form_response(client_id, submission_id="sub-1"):
        form_id = make_form(client_id, external_form_id=f"form-for-{submission_id}", status="completed")
        response = FormResponse(
            form_id=form_id,
            client_id=client_id,
            submission_id=submission_id,
            raw_responses=[{"questionId": "q1", "answer": "We invoice by hand"}],
            processed_responses=[{"questionId": "q1", "answer": "We invoice by hand", "type": "text"}],
            submitted_at=START,
            validation_score=1.0,
        )
        test_db.add(response)
        test_db.commit()
        return response.id

    return _make_form_response


@pytest.fixture
def run_next(runtime, session_factory):
    """Claim the next ready job of a queue and execute it."""

    def _run_next(queue_name):
        db = session_factory()
        try:
            job = runtime.queue_manager.claim_next(queue_name, db)
            assert job is not None, f"no ready job on {queue_name}"
            job_id = job.job_id
        finally:
            db.close()
        return job_id, runtime.queue_manager.execute(job_id)

    return _run_next


@pytest.fixture
def load_job(session_factory):
    """Read a job from a fresh session."""

    def _load_job(job_id):
        db = session_factory()
        try:
            job = db.get(Job, job_id)
            if job is not None:
                db.expunge(job)
            return job
        finally:
            db.close()

    return _load_job
