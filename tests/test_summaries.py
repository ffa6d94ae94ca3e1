import datetime

import pytest
from pydantic import ValidationError
from sqlalchemy import delete, func, select

from conftest import auth_headers, generate_body, get_credits, register, set_credits, transcript
from errors import AIRateLimitedError, AIResponseError, AIServiceUnavailableError, ConflictError
from models import Summary, SummaryStatus, User, UserPlan
from schemas import GenerateSummaryRequest, SaveSummaryRequest, SummaryQuery


def _summaries(session_factory, user_id):
    with session_factory() as db:
        return db.scalars(select(Summary).where(Summary.user_id == user_id).order_by(Summary.created_at)).all()


class TestGenerate:
    def test_generate_charges_once_and_completes(self, client, headers, user, session_factory, fake_summarizer):
        response = client.post("/api/summary/generate", json=generate_body("abc"), headers=headers)

        assert response.status_code == 200, response.text
        body = response.json()
        assert body["success"] is True
        data = body["data"]
        assert data["status"] == "COMPLETED"
        assert data["keyPoints"] == ["First point", "Second point", "Third point"]
        assert data["tags"] == ["python", "testing", "credits", "ai", "video"]
        assert data["videoMetadata"]["videoId"] == "abc"
        assert data["saved"] is True
        assert data["transcriptText"] == "Some words spoken in the video 0 Some words spoken in the video 1 Some words spoken in the video 2"

        assert get_credits(session_factory, user["user"]["id"]) == 9
        rows = _summaries(session_factory, user["user"]["id"])
        assert [row.status for row in rows] == [SummaryStatus.COMPLETED]
        assert fake_summarizer.calls == 1

    def test_same_video_is_returned_without_charge(self, client, headers, user, session_factory, fake_summarizer):
        first = client.post("/api/summary/generate", json=generate_body("abc"), headers=headers).json()["data"]
        second = client.post("/api/summary/generate", json=generate_body("abc"), headers=headers).json()["data"]

        assert second["id"] == first["id"]
        assert second["fullSummary"] == first["fullSummary"]
        assert fake_summarizer.calls == 1
        assert get_credits(session_factory, user["user"]["id"]) == 9
        assert len(_summaries(session_factory, user["user"]["id"])) == 1

    def test_insufficient_credits_creates_nothing(self, client, headers, user, session_factory, fake_summarizer):
        set_credits(session_factory, user["user"]["id"], 0)

        response = client.post("/api/summary/generate", json=generate_body("abc"), headers=headers)

        assert response.status_code == 402
        body = response.json()
        assert body["code"] == "INSUFFICIENT_CREDITS"
        assert body["creditsNeeded"] == 1
        assert body["upgradeUrl"].endswith("/upgrade")
        assert _summaries(session_factory, user["user"]["id"]) == []
        assert fake_summarizer.calls == 0
        assert get_credits(session_factory, user["user"]["id"]) == 0

    def test_ai_failure_refunds_and_marks_failed(self, client, headers, user, session_factory, fake_summarizer):
        fake_summarizer.error = AIRateLimitedError()

        response = client.post("/api/summary/generate", json=generate_body("abc"), headers=headers)

        assert response.status_code == 429
        body = response.json()
        assert body["code"] == "AI_RATE_LIMITED"
        assert body["retryable"] is True
        assert body["retryAfter"] == 60
        assert body["maxRetries"] == 3
        assert get_credits(session_factory, user["user"]["id"]) == 10
        rows = _summaries(session_factory, user["user"]["id"])
        assert [row.status for row in rows] == [SummaryStatus.FAILED]

    def test_malformed_ai_output_is_compensated(self, client, headers, user, session_factory, fake_summarizer):
        fake_summarizer.error = AIResponseError()

        response = client.post("/api/summary/generate", json=generate_body("abc"), headers=headers)

        assert response.status_code == 502
        assert response.json()["code"] == "AI_INVALID_RESPONSE"
        assert get_credits(session_factory, user["user"]["id"]) == 10
        assert [row.status for row in _summaries(session_factory, user["user"]["id"])] == [SummaryStatus.FAILED]

    def test_failed_attempt_does_not_block_retry(self, client, headers, user, session_factory, fake_summarizer):
        fake_summarizer.error = AIServiceUnavailableError()
        client.post("/api/summary/generate", json=generate_body("abc"), headers=headers)

        fake_summarizer.error = None
        response = client.post("/api/summary/generate", json=generate_body("abc"), headers=headers)

        assert response.status_code == 200
        assert get_credits(session_factory, user["user"]["id"]) == 9
        statuses = sorted(row.status.value for row in _summaries(session_factory, user["user"]["id"]))
        assert statuses == ["COMPLETED", "FAILED"]

    def test_walkthrough_two_videos_one_failure(self, client, headers, user, session_factory, fake_summarizer):
        user_id = user["user"]["id"]
        assert get_credits(session_factory, user_id) == 10

        first = client.post("/api/summary/generate", json=generate_body("abc"), headers=headers)
        assert first.status_code == 200
        assert len(first.json()["data"]["keyPoints"]) == 3
        assert len(first.json()["data"]["fullSummary"].split()) == 250
        assert len(first.json()["data"]["tags"]) == 5
        assert get_credits(session_factory, user_id) == 9

        again = client.post("/api/summary/generate", json=generate_body("abc"), headers=headers)
        assert again.json()["data"] == first.json()["data"]
        assert get_credits(session_factory, user_id) == 9

        seen_during_call = []
        fake_summarizer.on_call = lambda segments, metadata: seen_during_call.append(
            get_credits(session_factory, user_id)
        )
        fake_summarizer.error = AIServiceUnavailableError()
        failed = client.post("/api/summary/generate", json=generate_body("xyz"), headers=headers)

        assert failed.status_code == 503
        assert seen_during_call == [8]
        assert get_credits(session_factory, user_id) == 9
        rows = {row.video_id: row.status for row in _summaries(session_factory, user_id)}
        assert rows == {"abc": SummaryStatus.COMPLETED, "xyz": SummaryStatus.FAILED}

    def test_concurrent_completion_keeps_one_summary_and_refunds(
        self, summary_service, user, session_factory, fake_summarizer
    ):
        user_id = user["user"]["id"]
        request = GenerateSummaryRequest.model_validate(generate_body("abc"))

        def other_request_wins(segments, metadata):
            # Another request for the same video completes while this one waits on the AI
            with session_factory.begin() as db:
                db.add(
                    Summary(
                        title="Winner",
                        key_points=["winner"],
                        full_summary="the first completed summary",
                        tags=[],
                        status=SummaryStatus.COMPLETED,
                        video_id="abc",
                        video_title="Video abc",
                        channel_name="Test Channel",
                        video_url="https://www.youtube.com/watch?v=abc",
                        user_id=user_id,
                    )
                )

        fake_summarizer.on_call = other_request_wins

        result = summary_service.generate(user_id, request)

        assert result.title == "Winner"
        assert result.full_summary == "the first completed summary"
        rows = _summaries(session_factory, user_id)
        assert len(rows) == 1
        assert rows[0].status == SummaryStatus.COMPLETED
        # Only the provisional debit was taken back; the winner was inserted directly
        assert get_credits(session_factory, user_id) == 10

    def test_generate_requires_authentication(self, client):
        response = client.post("/api/summary/generate", json=generate_body("abc"))

        assert response.status_code == 401
        assert response.json()["code"] == "AUTH_REQUIRED"

    def test_generate_rejects_empty_transcript(self, client, headers, fake_summarizer):
        response = client.post("/api/summary/generate", json=generate_body("abc", segments=[]), headers=headers)

        assert response.status_code == 400
        body = response.json()
        assert body["code"] == "VALIDATION_ERROR"
        assert body["data"]["errors"][0]["field"] == "transcript"
        assert fake_summarizer.calls == 0


class TestHistory:
    def _save(self, client, headers, video_id="v1", title="My notes", **overrides):
        body = {
            "title": title,
            "keyPoints": ["a point"],
            "fullSummary": "A saved summary about testing.",
            "tags": ["notes"],
            "videoMetadata": generate_body(video_id)["videoMetadata"],
            "transcript": transcript(2),
        }
        body.update(overrides)
        response = client.post("/api/summary/save", json=body, headers=headers)
        assert response.status_code == 200, response.text
        return response.json()["data"]

    def test_save_does_not_charge(self, client, headers, user, session_factory):
        saved = self._save(client, headers)

        assert saved["status"] == "COMPLETED"
        assert saved["transcriptText"] == "Some words spoken in the video 0 Some words spoken in the video 1"
        assert get_credits(session_factory, user["user"]["id"]) == 10

    def test_save_updates_existing_summary_for_same_video(self, client, headers, user, session_factory):
        first = self._save(client, headers, title="First")
        second = self._save(client, headers, title="Second")

        assert second["id"] == first["id"]
        assert second["title"] == "Second"
        assert len(_summaries(session_factory, user["user"]["id"])) == 1

    def test_save_with_id_updates_that_summary(self, client, headers):
        first = self._save(client, headers, video_id="v1")
        updated = self._save(client, headers, video_id="v1", title="Renamed", id=first["id"])

        assert updated["id"] == first["id"]
        assert updated["title"] == "Renamed"

    def test_save_with_unknown_id_is_not_found(self, client, headers):
        response = client.post(
            "/api/summary/save",
            json={
                "id": "does-not-exist",
                "title": "x",
                "keyPoints": ["a"],
                "fullSummary": "b",
                "videoMetadata": generate_body("v1")["videoMetadata"],
            },
            headers=headers,
        )

        assert response.status_code == 404
        assert response.json()["code"] == "SUMMARY_NOT_FOUND"

    def test_list_paginates_and_filters(self, client, headers):
        for index in range(5):
            self._save(client, headers, video_id=f"v{index}", title=f"Talk {index}")
        self._save(client, headers, video_id="special", title="Quantum kittens")

        page = client.get("/api/summary", params={"page": 2, "limit": 2}, headers=headers).json()["data"]
        assert page["pagination"] == {
            "page": 2,
            "limit": 2,
            "total": 6,
            "totalPages": 3,
            "hasNext": True,
            "hasPrev": True,
        }
        assert len(page["data"]) == 2

        found = client.get("/api/summary", params={"search": "KITTENS"}, headers=headers).json()["data"]
        assert [item["title"] for item in found["data"]] == ["Quantum kittens"]

        by_video = client.get("/api/summary", params={"videoId": "v3"}, headers=headers).json()["data"]
        assert [item["videoMetadata"]["videoId"] for item in by_video["data"]] == ["v3"]

        by_title = client.get(
            "/api/summary", params={"sortBy": "title", "sortOrder": "asc", "limit": 100}, headers=headers
        ).json()["data"]
        titles = [item["title"] for item in by_title["data"]]
        assert titles == sorted(titles)

    def test_list_rejects_oversized_page(self, client, headers):
        response = client.get("/api/summary", params={"limit": 101}, headers=headers)

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

    def test_summaries_are_scoped_to_their_owner(self, client, headers):
        saved = self._save(client, headers)
        other = register(client, email="bob@example.com")
        other_headers = auth_headers(other["accessToken"])

        assert client.get(f"/api/summary/{saved['id']}", headers=other_headers).status_code == 404
        assert client.put(
            f"/api/summary/{saved['id']}", json={"title": "hijacked"}, headers=other_headers
        ).status_code == 404
        assert client.delete(f"/api/summary/{saved['id']}", headers=other_headers).status_code == 404
        assert client.get(f"/api/summary/{saved['id']}", headers=headers).json()["data"]["title"] == "My notes"

    def test_update_and_delete(self, client, headers):
        saved = self._save(client, headers)

        updated = client.put(
            f"/api/summary/{saved['id']}", json={"title": "Better title", "tags": ["x", "y"]}, headers=headers
        )
        assert updated.status_code == 200
        assert updated.json()["data"]["title"] == "Better title"
        assert updated.json()["data"]["tags"] == ["x", "y"]
        assert updated.json()["data"]["fullSummary"] == saved["fullSummary"]

        deleted = client.delete(f"/api/summary/{saved['id']}", headers=headers)
        assert deleted.status_code == 200
        assert client.get(f"/api/summary/{saved['id']}", headers=headers).status_code == 404

    def test_get_by_video(self, client, headers):
        assert client.get("/api/summary/video/v1", headers=headers).json() == {"success": True, "data": None}

        saved = self._save(client, headers, video_id="v1")

        found = client.get("/api/summary/video/v1", headers=headers).json()["data"]
        assert found["id"] == saved["id"]

    def test_stats(self, client, headers, fake_summarizer):
        self._save(client, headers, video_id="v1", fullSummary="x" * 10)
        self._save(client, headers, video_id="v2", fullSummary="x" * 20)
        fake_summarizer.error = AIServiceUnavailableError()
        client.post("/api/summary/generate", json=generate_body("v3"), headers=headers)

        stats = client.get("/api/summary/stats", headers=headers).json()["data"]

        assert stats == {
            "totalSummaries": 3,
            "summariesThisMonth": 3,
            "completedSummaries": 2,
            "failedSummaries": 1,
            "averageSummaryLength": 15,
        }


class TestRetention:
    def test_cleanup_keeps_most_recent(self, settings, summary_service, user, session_factory):
        user_id = user["user"]["id"]
        summary_service.settings = settings.model_copy(update={"max_summary_history": 3})
        base = datetime.datetime(2024, 1, 1)
        with session_factory.begin() as db:
            for index in range(5):
                db.add(
                    Summary(
                        title=f"Summary {index}",
                        key_points=["k"],
                        full_summary="s",
                        tags=[],
                        status=SummaryStatus.COMPLETED,
                        video_id=f"v{index}",
                        video_title="t",
                        channel_name="c",
                        video_url="https://www.youtube.com/watch?v=x",
                        user_id=user_id,
                        created_at=base + datetime.timedelta(days=index),
                    )
                )

        other = register_other(session_factory)

        deleted = summary_service.cleanup_old_summaries()

        assert deleted == 2
        remaining = [row.title for row in _summaries(session_factory, user_id)]
        assert remaining == ["Summary 2", "Summary 3", "Summary 4"]
        with session_factory() as db:
            assert db.scalar(select(func.count(Summary.id)).where(Summary.user_id == other)) == 1


class TestRequestModels:
    def test_list_query_defaults(self):
        query = SummaryQuery()
        assert (query.page, query.limit, query.sort_by, query.sort_order) == (1, 20, "createdAt", "desc")

    def test_save_request_limits_tags(self):
        body = {
            "title": "t",
            "keyPoints": ["k"],
            "fullSummary": "s",
            "tags": [str(index) for index in range(11)],
            "videoMetadata": generate_body("v")["videoMetadata"],
        }
        with pytest.raises(ValidationError):
            SaveSummaryRequest.model_validate(body)


def register_other(session_factory) -> str:
    """A second user below the cap, who must be left alone."""
    with session_factory.begin() as db:
        other = User(email="other@example.com", plan=UserPlan.FREE, credits=10)
        db.add(other)
        db.flush()
        db.add(
            Summary(
                title="Only one",
                key_points=["k"],
                full_summary="s",
                tags=[],
                status=SummaryStatus.COMPLETED,
                video_id="o1",
                video_title="t",
                channel_name="c",
                video_url="https://www.youtube.com/watch?v=o",
                user_id=other.id,
            )
        )
        return other.id


def _processing_row(session_factory, user_id, video_id="busy") -> str:
    with session_factory.begin() as db:
        row = Summary(
            title="In flight",
            key_points=[],
            full_summary="",
            tags=[],
            status=SummaryStatus.PROCESSING,
            video_id=video_id,
            video_title="t",
            channel_name="c",
            video_url="https://www.youtube.com/watch?v=busy",
            user_id=user_id,
        )
        db.add(row)
        db.flush()
        return row.id


class TestInFlightRows:
    def test_row_removed_during_generation_is_refunded(self, summary_service, user, session_factory, fake_summarizer):
        user_id = user["user"]["id"]

        def remove_everything(segments, metadata):
            with session_factory.begin() as db:
                db.execute(delete(Summary).where(Summary.user_id == user_id))

        fake_summarizer.on_call = remove_everything

        with pytest.raises(ConflictError) as excinfo:
            summary_service.generate(user_id, GenerateSummaryRequest.model_validate(generate_body("abc")))

        assert excinfo.value.code == "SUMMARY_REMOVED"
        assert get_credits(session_factory, user_id) == 10
        assert _summaries(session_factory, user_id) == []

    def test_account_removed_during_generation(self, summary_service, user, session_factory, fake_summarizer):
        user_id = user["user"]["id"]

        def remove_account(segments, metadata):
            with session_factory.begin() as db:
                db.execute(delete(User).where(User.id == user_id))

        fake_summarizer.on_call = remove_account

        with pytest.raises(ConflictError):
            summary_service.generate(user_id, GenerateSummaryRequest.model_validate(generate_body("abc")))

    def test_retention_skips_rows_being_generated(
        self, settings, summary_service, user, session_factory, fake_summarizer
    ):
        user_id = user["user"]["id"]
        summary_service.settings = settings.model_copy(update={"max_summary_history": 0})
        removed = []
        fake_summarizer.on_call = lambda segments, metadata: removed.append(summary_service.cleanup_old_summaries())

        result = summary_service.generate(user_id, GenerateSummaryRequest.model_validate(generate_body("abc")))

        assert removed == [0]
        assert result.status == SummaryStatus.COMPLETED
        assert get_credits(session_factory, user_id) == 9

    def test_processing_row_cannot_be_deleted(self, client, headers, user, session_factory):
        summary_id = _processing_row(session_factory, user["user"]["id"])

        response = client.delete(f"/api/summary/{summary_id}", headers=headers)

        assert response.status_code == 409
        assert response.json()["code"] == "SUMMARY_PROCESSING"
        assert len(_summaries(session_factory, user["user"]["id"])) == 1

    def test_processing_row_cannot_be_saved_over(self, client, headers, user, session_factory):
        summary_id = _processing_row(session_factory, user["user"]["id"])
        body = {
            "id": summary_id,
            "title": "Mine now",
            "keyPoints": ["k"],
            "fullSummary": "s",
            "videoMetadata": generate_body("busy")["videoMetadata"],
        }

        response = client.post("/api/summary/save", json=body, headers=headers)

        assert response.status_code == 409
        assert response.json()["code"] == "SUMMARY_PROCESSING"

    def test_saving_over_failed_row_completes_it(self, client, headers, user, session_factory, fake_summarizer):
        fake_summarizer.error = AIServiceUnavailableError()
        client.post("/api/summary/generate", json=generate_body("abc"), headers=headers)
        failed = _summaries(session_factory, user["user"]["id"])[0]
        body = {
            "id": failed.id,
            "title": "Written by hand",
            "keyPoints": ["k"],
            "fullSummary": "A summary the user wrote.",
            "videoMetadata": generate_body("abc")["videoMetadata"],
        }

        saved = client.post("/api/summary/save", json=body, headers=headers).json()["data"]

        assert saved["id"] == failed.id
        assert saved["status"] == "COMPLETED"
        assert client.get("/api/summary/video/abc", headers=headers).json()["data"]["id"] == failed.id
