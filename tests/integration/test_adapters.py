"""Platform adapters against canned API responses served by httpx.MockTransport."""

from __future__ import annotations

import base64
from collections.abc import Callable

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import select

from prism.db.enums import Platform, TaskStatus
from prism.db.models import PlatformStat, Task
from prism.errors import InvalidCredentialError, NotFoundError, ServiceUnavailableError
from prism.integrations.calendar import GoogleCalendarAdapter, MicrosoftCalendarAdapter
from prism.integrations import codeforces
from prism.integrations.codeforces import CodeforcesAdapter
from prism.integrations.github import GitHubAdapter
from prism.integrations.leetcode import LeetCodeAdapter
from prism.integrations.openproject import OpenProjectAdapter

Handler = Callable[[httpx.Request], httpx.Response]


@pytest_asyncio.fixture
async def client_for():
    clients: list[httpx.AsyncClient] = []

    def _make(handler: Handler) -> httpx.AsyncClient:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        clients.append(client)
        return client

    yield _make
    for client in clients:
        await client.aclose()


async def only_stat(db) -> PlatformStat:
    return (await db.execute(select(PlatformStat))).scalar_one()


class TestGitHubAdapter:
    async def test_daily_counts(self, db_session, make_user, make_connection, settings, cipher, client_for):
        seen_auth = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen_auth.append(request.headers.get("Authorization"))
            if request.url.path == "/users/octo":
                return httpx.Response(200, json={"id": 1, "login": "octo", "public_repos": 7})
            q = request.url.params["q"]
            if "reviewed-by:octo" in q:
                total = 4
            elif "type:pr" in q:
                total = 1
            elif "type:issue" in q:
                total = 2
            else:
                assert request.url.path == "/search/commits"
                total = 3
            return httpx.Response(200, json={"total_count": total, "items": []})

        user = await make_user()
        conn = await make_connection(
            user, Platform.GITHUB, external_username="octo", credential=cipher.encrypt("ghp_token")
        )
        adapter = GitHubAdapter(client_for(handler), settings, cipher)

        await adapter.sync_data(db_session, user.id, conn.id)

        stat = await only_stat(db_session)
        assert (stat.commits, stat.pull_requests, stat.issues, stat.reviews) == (3, 1, 2, 4)
        assert stat.detail == {"public_repos": 7}
        assert set(seen_auth) == {"Bearer ghp_token"}

    async def test_public_profile_without_credential(
        self, db_session, make_user, make_connection, settings, cipher, client_for
    ):
        def handler(request: httpx.Request) -> httpx.Response:
            assert "Authorization" not in request.headers
            return httpx.Response(200, json={"id": 9, "login": "octo", "name": "Octo Cat", "total_count": 0})

        user = await make_user()
        conn = await make_connection(user, Platform.GITHUB, external_username="octo")
        profile = await GitHubAdapter(client_for(handler), settings, cipher).fetch_user_data(db_session, conn.id)
        assert profile.external_id == "9"
        assert profile.display_name == "Octo Cat"

    async def test_wrong_platform_connection(self, db_session, make_user, make_connection, settings, client_for):
        conn = await make_connection(await make_user(), Platform.LEETCODE)
        adapter = GitHubAdapter(client_for(lambda request: httpx.Response(500)), settings)
        with pytest.raises(NotFoundError):
            await adapter.sync_data(db_session, conn.user_id, conn.id)


class TestLeetCodeAdapter:
    PAYLOAD = {
        "data": {
            "matchedUser": {
                "username": "coder",
                "profile": {"realName": "", "ranking": 12345},
                "submitStatsGlobal": {
                    "acSubmissionNum": [
                        {"difficulty": "All", "count": 10},
                        {"difficulty": "Easy", "count": 5},
                        {"difficulty": "Medium", "count": 4},
                        {"difficulty": "Hard", "count": 1},
                    ]
                },
            },
            "userContestRanking": {"attendedContestsCount": 2, "rating": 1650.4},
        }
    }

    async def test_first_sync_counts_totals(self, db_session, make_user, make_connection, settings, client_for):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "POST"
            assert b'"username": "coder"' in request.content or b'"username":"coder"' in request.content
            return httpx.Response(200, json=self.PAYLOAD)

        user = await make_user()
        conn = await make_connection(user, Platform.LEETCODE, external_username="coder")
        await LeetCodeAdapter(client_for(handler), settings).sync_data(db_session, user.id, conn.id)

        stat = await only_stat(db_session)
        assert stat.problems_solved == 10
        assert (stat.easy_solved, stat.medium_solved, stat.hard_solved) == (5, 4, 1)
        assert stat.contests_participated == 2
        assert stat.rating == 1650
        assert stat.detail["ranking"] == 12345

    async def test_unknown_user(self, db_session, make_user, make_connection, settings, client_for):
        handler = lambda request: httpx.Response(200, json={"data": {"matchedUser": None}})  # noqa: E731
        conn = await make_connection(await make_user(), Platform.LEETCODE, external_username="ghost")
        with pytest.raises(NotFoundError):
            await LeetCodeAdapter(client_for(handler), settings).sync_data(db_session, conn.user_id, conn.id)

    async def test_profile(self, db_session, make_user, make_connection, settings, client_for):
        conn = await make_connection(await make_user(), Platform.LEETCODE, external_username="coder")
        adapter = LeetCodeAdapter(client_for(lambda request: httpx.Response(200, json=self.PAYLOAD)), settings)
        profile = await adapter.fetch_user_data(db_session, conn.id)
        assert profile.username == "coder"
        assert profile.display_name is None
        assert profile.profile_url == "https://leetcode.com/u/coder/"


class TestCodeforcesAdapter:
    async def test_unique_accepted_by_rating(self, db_session, make_user, make_connection, settings, client_for):
        submissions = [
            {"verdict": "OK", "problem": {"contestId": 1, "index": "A", "rating": 800}},
            {"verdict": "OK", "problem": {"contestId": 1, "index": "A", "rating": 800}},
            {"verdict": "OK", "problem": {"contestId": 2, "index": "E", "rating": 2400}},
            {"verdict": "WRONG_ANSWER", "problem": {"contestId": 3, "index": "B", "rating": 1500}},
        ]

        def handler(request: httpx.Request) -> httpx.Response:
            method = request.url.path.rsplit("/", 1)[-1]
            results = {
                "user.info": [{"handle": "tourist", "rating": 3800, "maxRating": 3900, "rank": "legendary"}],
                "user.status": submissions,
                "user.rating": [{}, {}, {}],
            }
            return httpx.Response(200, json={"status": "OK", "result": results[method]})

        user = await make_user()
        conn = await make_connection(user, Platform.CODEFORCES, external_username="tourist")
        await CodeforcesAdapter(client_for(handler), settings).sync_data(db_session, user.id, conn.id)

        stat = await only_stat(db_session)
        assert stat.problems_solved == 2
        assert (stat.easy_solved, stat.medium_solved, stat.hard_solved) == (1, 0, 1)
        assert stat.contests_participated == 3
        assert stat.rating == 3800
        assert stat.detail["rank"] == "legendary"

    async def test_reads_whole_submission_history(
        self, monkeypatch, db_session, make_user, make_connection, settings, client_for
    ):
        monkeypatch.setattr(codeforces, "SUBMISSION_PAGE", 2)
        submissions = [
            {"verdict": "OK", "problem": {"contestId": 5, "index": "C", "rating": 1600}},
            {"verdict": "WRONG_ANSWER", "problem": {"contestId": 4, "index": "A", "rating": 900}},
            {"verdict": "OK", "problem": {"contestId": 5, "index": "C", "rating": 1600}},
            {"verdict": "OK", "problem": {"contestId": 1, "index": "A", "rating": 800}},
            {"verdict": "OK", "problem": {"contestId": 2, "index": "B", "rating": 2000}},
        ]
        pages: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            method = request.url.path.rsplit("/", 1)[-1]
            if method == "user.status":
                start, count = int(request.url.params["from"]), int(request.url.params["count"])
                pages.append(request.url.params["from"])
                result = submissions[start - 1 : start - 1 + count]
            elif method == "user.info":
                result = [{"handle": "tourist", "rating": 3800}]
            else:
                result = []
            return httpx.Response(200, json={"status": "OK", "result": result})

        user = await make_user()
        conn = await make_connection(user, Platform.CODEFORCES, external_username="tourist")
        await CodeforcesAdapter(client_for(handler), settings).sync_data(db_session, user.id, conn.id)

        assert pages == ["1", "3", "5"]
        stat = await only_stat(db_session)
        assert stat.problems_solved == 3
        assert (stat.easy_solved, stat.medium_solved, stat.hard_solved) == (1, 1, 1)

    async def test_unknown_handle(self, db_session, make_user, make_connection, settings, client_for):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                400, json={"status": "FAILED", "comment": "handles: User with handle ghost not found"}
            )

        conn = await make_connection(await make_user(), Platform.CODEFORCES, external_username="ghost")
        with pytest.raises(NotFoundError):
            await CodeforcesAdapter(client_for(handler), settings).sync_data(db_session, conn.user_id, conn.id)

    async def test_other_api_failure_is_transient(self, db_session, make_user, make_connection, settings, client_for):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"status": "FAILED", "comment": "Call limit exceeded"})

        conn = await make_connection(await make_user(), Platform.CODEFORCES, external_username="tourist")
        with pytest.raises(ServiceUnavailableError):
            await CodeforcesAdapter(client_for(handler), settings).sync_data(db_session, conn.user_id, conn.id)


class TestCalendarAdapters:
    async def test_google_paginates_and_skips_cancelled(
        self, db_session, make_user, make_connection, settings, cipher, client_for
    ):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.headers["Authorization"] == "Bearer ya29.token"
            assert request.url.path.endswith("/calendars/primary/events")
            if request.url.params.get("pageToken") == "p2":
                return httpx.Response(200, json={"items": [{"status": "confirmed"}]})
            return httpx.Response(
                200,
                json={"items": [{"status": "confirmed"}, {"status": "cancelled"}], "nextPageToken": "p2"},
            )

        user = await make_user()
        conn = await make_connection(
            user, Platform.GOOGLE_CALENDAR, credential=cipher.encrypt("ya29.token")
        )
        await GoogleCalendarAdapter(client_for(handler), settings, cipher).sync_data(db_session, user.id, conn.id)
        assert (await only_stat(db_session)).calendar_events == 2

    async def test_microsoft_follows_next_link(
        self, db_session, make_user, make_connection, settings, cipher, client_for
    ):
        requests: list[httpx.URL] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request.url)
            if "skiptoken" in str(request.url):
                return httpx.Response(200, json={"value": [{"isCancelled": False}]})
            return httpx.Response(
                200,
                json={
                    "value": [{"isCancelled": False}, {"isCancelled": True}],
                    "@odata.nextLink": "https://graph.microsoft.com/v1.0/me/calendarView?$skiptoken=abc",
                },
            )

        user = await make_user()
        conn = await make_connection(user, Platform.MS_CALENDAR, credential=cipher.encrypt("eyJ0"))
        await MicrosoftCalendarAdapter(client_for(handler), settings, cipher).sync_data(db_session, user.id, conn.id)

        assert (await only_stat(db_session)).calendar_events == 2
        assert len(requests) == 2
        assert "startDateTime" in requests[0].params

    async def test_credential_required(self, db_session, make_user, make_connection, settings, cipher, client_for):
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no remote call expected")

        conn = await make_connection(await make_user(), Platform.GOOGLE_CALENDAR)
        with pytest.raises(InvalidCredentialError):
            await GoogleCalendarAdapter(client_for(handler), settings, cipher).sync_data(
                db_session, conn.user_id, conn.id
            )


class TestOpenProjectAdapter:
    async def test_work_packages_become_tasks(
        self, db_session, make_user, make_connection, settings, cipher, client_for
    ):
        expected_auth = "Basic " + base64.b64encode(b"apikey:op-key").decode()

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.headers["Authorization"] == expected_auth
            return httpx.Response(
                200,
                json={
                    "total": 2,
                    "_embedded": {
                        "elements": [
                            {
                                "id": 11,
                                "subject": "Release 1.0",
                                "updatedAt": "2026-02-25T10:00:00Z",
                                "_embedded": {"status": {"name": "Closed", "isClosed": True}},
                            },
                            {
                                "id": 12,
                                "subject": "Write docs",
                                "_embedded": {"status": {"name": "In progress", "isClosed": False}},
                            },
                        ]
                    },
                },
            )

        user = await make_user()
        conn = await make_connection(user, Platform.OPENPROJECT, credential=cipher.encrypt("op-key"))
        await OpenProjectAdapter(client_for(handler), settings, cipher).sync_data(db_session, user.id, conn.id)

        tasks = {t.source_id: t for t in (await db_session.execute(select(Task))).scalars()}
        assert set(tasks) == {"11", "12"}
        assert tasks["11"].status is TaskStatus.COMPLETED
        assert tasks["11"].completed_at is not None
        assert tasks["12"].status is TaskStatus.IN_PROGRESS
        assert tasks["12"].completed_at is None
