import pytest

from preflight.errors import InvalidTransition, JobAlreadyClaimed, JobNotFound, ValidationError
from preflight.jobs import JobStore
from preflight.lifecycle import BucketKind, JobStatus


async def _make_anonymous_job(store: JobStore, session_id: str = "sess-1", file_name: str = "paper.pdf"):
    return await store.create(
        session_id=session_id,
        source_ip="10.0.0.1",
        file_name=file_name,
        storage_bucket=BucketKind.TEMPORARY,
        storage_key=f"temp/{session_id}/job/{file_name}",
    )


async def _make_owned_job(store: JobStore, owner_id: str = "user-1"):
    return await store.create(
        owner_id=owner_id,
        file_name="paper.pdf",
        storage_bucket=BucketKind.PERMANENT,
        storage_key=f"{owner_id}/job/paper.pdf",
    )


class TestCreate:
    async def test_anonymous_job_starts_uploading(self, session) -> None:
        store = JobStore(session)

        job = await _make_anonymous_job(store)

        assert job.status == JobStatus.UPLOADING.value
        assert job.owner_id is None
        assert job.session_id == "sess-1"
        assert job.storage_bucket == BucketKind.TEMPORARY.value
        assert job.extracted_text is None
        assert job.error_message is None

    async def test_owned_job(self, session) -> None:
        store = JobStore(session)

        job = await _make_owned_job(store)

        assert job.owner_id == "user-1"
        assert job.session_id is None
        assert (await store.get(job.id)).storage_bucket == BucketKind.PERMANENT.value

    async def test_uses_given_job_id(self, session) -> None:
        store = JobStore(session)

        job = await store.create(
            job_id="fixed-id",
            session_id="s",
            file_name="a.pdf",
            storage_bucket=BucketKind.TEMPORARY,
            storage_key="temp/s/fixed-id/a.pdf",
        )

        assert job.id == "fixed-id"

    async def test_rejects_neither_owner_nor_session(self, session) -> None:
        store = JobStore(session)

        with pytest.raises(ValidationError, match="exactly one"):
            await store.create(file_name="a.pdf", storage_bucket=BucketKind.TEMPORARY, storage_key="k")

    async def test_rejects_both_owner_and_session(self, session) -> None:
        store = JobStore(session)

        with pytest.raises(ValidationError, match="exactly one"):
            await store.create(
                owner_id="user-1",
                session_id="sess-1",
                file_name="a.pdf",
                storage_bucket=BucketKind.PERMANENT,
                storage_key="k",
            )

    async def test_anonymous_job_must_use_temporary_bucket(self, session) -> None:
        store = JobStore(session)

        with pytest.raises(ValidationError, match="temporary"):
            await store.create(
                session_id="sess-1", file_name="a.pdf", storage_bucket=BucketKind.PERMANENT, storage_key="k"
            )

    async def test_owned_job_must_use_permanent_bucket(self, session) -> None:
        store = JobStore(session)

        with pytest.raises(ValidationError, match="permanent"):
            await store.create(
                owner_id="user-1", file_name="a.pdf", storage_bucket=BucketKind.TEMPORARY, storage_key="k"
            )


class TestGet:
    async def test_get_unknown_returns_none(self, session) -> None:
        assert await JobStore(session).get("missing") is None

    async def test_require_unknown_raises(self, session) -> None:
        with pytest.raises(JobNotFound):
            await JobStore(session).require("missing")


class TestUpdateStatus:
    async def test_full_success_path(self, session) -> None:
        store = JobStore(session)
        job = await _make_anonymous_job(store)

        await store.update_status(job.id, JobStatus.UPLOADED)
        await store.update_status(job.id, JobStatus.PROCESSING)
        done = await store.update_status(job.id, JobStatus.COMPLETED, extracted_text="text", page_count=2)

        assert done.status == "completed"
        assert done.extracted_text == "text"
        assert done.page_count == 2
        assert done.error_message is None

    async def test_failure_records_message(self, session) -> None:
        store = JobStore(session)
        job = await _make_anonymous_job(store)
        await store.update_status(job.id, JobStatus.UPLOADED)
        await store.update_status(job.id, JobStatus.PROCESSING)

        failed = await store.update_status(job.id, JobStatus.FAILED, error_message="bad pdf")

        assert failed.status == "failed"
        assert failed.error_message == "bad pdf"
        assert failed.extracted_text is None

    async def test_skipping_a_step_is_invalid(self, session) -> None:
        store = JobStore(session)
        job = await _make_anonymous_job(store)

        with pytest.raises(InvalidTransition) as exc_info:
            await store.update_status(job.id, JobStatus.PROCESSING)

        assert exc_info.value.current == "uploading"
        assert (await store.get(job.id)).status == "uploading"

    @pytest.mark.parametrize("terminal", [JobStatus.COMPLETED, JobStatus.FAILED])
    async def test_terminal_state_never_moves(self, session, terminal: JobStatus) -> None:
        store = JobStore(session)
        job = await _make_anonymous_job(store)
        await store.update_status(job.id, JobStatus.UPLOADED)
        await store.update_status(job.id, JobStatus.PROCESSING)
        if terminal is JobStatus.COMPLETED:
            await store.update_status(job.id, terminal, extracted_text="text")
        else:
            await store.update_status(job.id, terminal, error_message="boom")

        for target in JobStatus:
            with pytest.raises((InvalidTransition, ValueError)):
                await store.update_status(
                    job.id,
                    target,
                    extracted_text="other" if target is JobStatus.COMPLETED else None,
                    error_message="other" if target is JobStatus.FAILED else None,
                )

        assert (await store.get(job.id)).status == terminal.value

    async def test_unknown_job_raises_not_found(self, session) -> None:
        with pytest.raises(JobNotFound):
            await JobStore(session).update_status("missing", JobStatus.UPLOADED)

    async def test_completed_requires_text(self, session) -> None:
        store = JobStore(session)
        job = await _make_anonymous_job(store)

        with pytest.raises(ValueError):
            await store.update_status(job.id, JobStatus.COMPLETED)

    async def test_failed_requires_message(self, session) -> None:
        store = JobStore(session)
        job = await _make_anonymous_job(store)

        with pytest.raises(ValueError):
            await store.update_status(job.id, JobStatus.FAILED, error_message="")

    async def test_non_terminal_rejects_payload(self, session) -> None:
        store = JobStore(session)
        job = await _make_anonymous_job(store)

        with pytest.raises(ValueError):
            await store.update_status(job.id, JobStatus.UPLOADED, extracted_text="early")


class TestListBySession:
    async def test_filters_by_session_and_status(self, session) -> None:
        store = JobStore(session)
        pending = await _make_anonymous_job(store, session_id="sess-1")
        processed = await _make_anonymous_job(store, session_id="sess-1")
        await store.update_status(processed.id, JobStatus.UPLOADED)
        await store.update_status(processed.id, JobStatus.PROCESSING)
        await _make_anonymous_job(store, session_id="sess-2")

        jobs = await store.list_by_session("sess-1", [JobStatus.UPLOADING, JobStatus.UPLOADED])

        assert [j.id for j in jobs] == [pending.id]

    async def test_newest_first(self, session) -> None:
        store = JobStore(session)
        first = await _make_anonymous_job(store, file_name="first.pdf")
        second = await _make_anonymous_job(store, file_name="second.pdf")

        jobs = await store.list_by_session("sess-1", [JobStatus.UPLOADING])

        assert [j.id for j in jobs] == [second.id, first.id]

    async def test_claimed_jobs_are_excluded(self, session) -> None:
        store = JobStore(session)
        job = await _make_anonymous_job(store)
        await store.reassign_owner(job.id, "user-1", "user-1/job/paper.pdf")

        assert await store.list_by_session("sess-1", [JobStatus.UPLOADING]) == []


class TestReassignOwner:
    async def test_claims_anonymous_job(self, session) -> None:
        store = JobStore(session)
        job = await _make_anonymous_job(store)

        claimed = await store.reassign_owner(job.id, "user-1", "user-1/job/paper.pdf", BucketKind.PERMANENT)

        assert claimed.owner_id == "user-1"
        assert claimed.session_id is None
        assert claimed.storage_key == "user-1/job/paper.pdf"
        assert claimed.storage_bucket == BucketKind.PERMANENT.value
        assert claimed.status == "uploading"

    async def test_second_claim_is_rejected(self, session) -> None:
        store = JobStore(session)
        job = await _make_anonymous_job(store)
        await store.reassign_owner(job.id, "user-1", "user-1/job/paper.pdf")

        with pytest.raises(JobAlreadyClaimed):
            await store.reassign_owner(job.id, "user-2", "user-2/job/paper.pdf")

        assert (await store.get(job.id)).owner_id == "user-1"

    async def test_owned_job_cannot_be_reassigned(self, session) -> None:
        store = JobStore(session)
        job = await _make_owned_job(store)

        with pytest.raises(JobAlreadyClaimed):
            await store.reassign_owner(job.id, "user-2", "user-2/job/paper.pdf")

    async def test_unknown_job(self, session) -> None:
        with pytest.raises(JobNotFound):
            await JobStore(session).reassign_owner("missing", "user-1", "k")
