"""Tests for the pull request client against a scripted service."""

import json

import pytest
from pydantic import ValidationError

from ado_review.api_clients.base_client import RestTransport
from ado_review.api_clients.pull_requests_client import (
    PROFILE_URL,
    CompletionOptions,
    MergeStrategy,
    PullRequestsAPIClient,
    ThreadStatus,
    Vote,
    ensure_distinct_branches,
    strip_ref,
    to_ref,
)
from ado_review.config import TransportConfig
from ado_review.remote.exceptions import ConflictError

from tests.helpers import reply


def _pr(pr_id, source="feature/login", target="main", **extra):
    data = {
        "pullRequestId": pr_id,
        "title": f"PR {pr_id}",
        "sourceRefName": f"refs/heads/{source}",
        "targetRefName": f"refs/heads/{target}",
        "status": "active",
        "createdBy": {"id": "u1", "displayName": "Alice"},
    }
    data.update(extra)
    return data


def _thread(thread_id, *comments, status="active", file_path=None, deleted=False):
    data = {
        "id": thread_id,
        "status": status,
        "isDeleted": deleted,
        "comments": [
            {
                "id": comment_id,
                "parentCommentId": 0,
                "content": body,
                "author": {"id": "u2", "displayName": "Bob"},
                "publishedDate": "2026-03-01T10:00:00Z",
            }
            for comment_id, body in comments
        ],
    }
    if file_path:
        data["threadContext"] = {"filePath": file_path, "rightFileStart": {"line": 12}}
    return data


@pytest.fixture
async def client(register, make_account, token_manager, server, repository):
    account = make_account()
    await register(account)
    transport = RestTransport(
        token_manager,
        config=TransportConfig(jitter_enabled=False),
        client=server.client(),
    )
    return PullRequestsAPIClient(transport, repository, account.key)


class TestBranchRefs:
    def test_ref_helpers(self):
        assert to_ref("main") == "refs/heads/main"
        assert to_ref(" refs/heads/main ") == "refs/heads/main"
        assert strip_ref("refs/heads/feature/x") == "feature/x"
        assert strip_ref("refs/tags/v1") == "refs/tags/v1"

    def test_same_branch_in_either_form_is_rejected(self):
        with pytest.raises(ConflictError) as exc_info:
            ensure_distinct_branches("main", "refs/heads/main")

        assert exc_info.value.status_code is None
        ensure_distinct_branches("feature/login", "main")


class TestPullRequests:
    async def test_list_maps_fields(self, client, server):
        server.add(
            "GET",
            "/pullrequests$",
            reply(json={"value": [_pr(42, reviewers=[{"id": "r1", "vote": 10}]), _pr(43)]}),
        )

        prs = await client.list_pull_requests(status="active", top=10)

        assert [pr.id for pr in prs] == [42, 43]
        assert prs[0].source_branch == "feature/login"
        assert prs[0].target_branch == "main"
        assert prs[0].reviewers[0].vote == 10
        assert prs[0].created_by.display_name == "Alice"
        params = server.requests[0].url.params
        assert params["searchCriteria.status"] == "active"
        assert params["api-version"] == "7.0"

    async def test_create_posts_refs(self, client, server):
        server.add("POST", "/pullrequests$", reply(201, json=_pr(44, title="Add login")))

        pr = await client.create_pull_request(
            "feature/login", "main", "Add login", reviewers=[{"id": "r1"}]
        )

        assert pr.id == 44
        body = json.loads(server.requests[0].content)
        assert body["sourceRefName"] == "refs/heads/feature/login"
        assert body["targetRefName"] == "refs/heads/main"
        assert body["reviewers"] == [{"id": "r1"}]

    async def test_create_with_same_branch_sends_nothing(self, client, server):
        with pytest.raises(ConflictError):
            await client.create_pull_request("main", "main", "noop")

        assert server.requests == []

    async def test_create_conflict_carries_service_message(self, client, server):
        message = "TF401179: An active pull request for the source and target branch already exists."
        server.add("POST", "/pullrequests$", reply(409, json={"message": message}))

        with pytest.raises(ConflictError) as exc_info:
            await client.create_pull_request("feature/login", "main", "dup")

        assert exc_info.value.status_code == 409
        assert exc_info.value.detail == message
        assert len(server.requests) == 1

    async def test_find_for_branch(self, client, server):
        server.add("GET", "/pullrequests$", reply(json={"value": []}))

        assert await client.find_pull_request_for_branch("feature/x") is None
        params = server.requests[0].url.params
        assert params["searchCriteria.sourceRefName"] == "refs/heads/feature/x"


class TestThreads:
    async def test_list_threads_skips_deleted_and_returns_etag(self, client, server):
        server.add(
            "GET",
            "/pullrequests/42/threads$",
            reply(
                json={
                    "value": [
                        _thread(1, (1, "Looks good")),
                        _thread(2, (1, "gone"), deleted=True),
                        _thread(3, (1, "Nit"), status=2, file_path="/src/app.py"),
                    ]
                },
                headers={"ETag": '"v1"'},
            ),
        )

        listing = await client.list_threads(42)

        assert listing.etag == '"v1"'
        assert [t.id for t in listing.threads] == [1, 3]
        general, inline = listing.threads
        assert general.is_general
        assert inline.file_path == "/src/app.py"
        assert inline.line == 12
        assert inline.status == ThreadStatus.FIXED
        assert inline.is_resolved
        assert general.comments[0].key == "1:1"

    async def test_not_modified_listing(self, client, server):
        server.add("GET", "/threads$", reply(304))

        listing = await client.list_threads(42, etag='"v1"')

        assert listing.not_modified
        assert listing.etag == '"v1"'
        assert server.requests[0].headers["If-None-Match"] == '"v1"'

    async def test_create_file_thread(self, client, server):
        server.add("POST", "/threads$", reply(json=_thread(9, (1, "Why?"), file_path="/a.py")))

        thread = await client.create_thread(42, "Why?", file_path="a.py", line=3)

        assert thread.id == 9
        body = json.loads(server.requests[0].content)
        assert body["threadContext"]["filePath"] == "/a.py"
        assert body["threadContext"]["rightFileStart"] == {"line": 3, "offset": 1}

    async def test_reply_and_status_update(self, client, server):
        server.add(
            "POST",
            "/threads/7/comments$",
            reply(json={"id": 2, "parentCommentId": 1, "content": "Done"}),
        )
        server.add("PATCH", "/threads/7$", reply(json=_thread(7, (1, "x"), status="closed")))

        comment = await client.reply_to_thread(42, 7, "Done")
        thread = await client.update_thread_status(42, 7, ThreadStatus.CLOSED)

        assert (comment.thread_id, comment.id, comment.parent_comment_id) == (7, 2, 1)
        assert thread.status == ThreadStatus.CLOSED
        assert json.loads(server.requests[1].content) == {"status": "closed"}

    @pytest.mark.parametrize(
        "raw, expected",
        [(1, ThreadStatus.ACTIVE), ("WontFix", ThreadStatus.WONT_FIX), ("odd", ThreadStatus.UNKNOWN)],
    )
    def test_thread_status_parse(self, raw, expected):
        assert ThreadStatus.parse(raw) == expected


class TestVote:
    async def test_vote_uses_profile_id_once(self, client, server):
        server.add("GET", "/profile/profiles/me$", reply(json={"id": "me-123"}))
        server.add("PUT", "/reviewers/me-123$", reply(json={"id": "me-123", "vote": 10}))

        first = await client.vote(42, Vote.APPROVED)
        await client.vote(42, Vote.APPROVED)

        assert first.vote == 10
        assert len(server.calls("GET", "/profile/")) == 1
        assert str(server.calls("GET")[0].url).startswith(PROFILE_URL)
        assert json.loads(server.calls("PUT")[0].content) == {"vote": 10}


class TestCompletion:
    async def test_complete_sends_merge_commit_and_options(self, client, server):
        server.add(
            "GET",
            "/pullrequests/42$",
            reply(json=_pr(42, lastMergeSourceCommit={"commitId": "abc123"})),
        )
        server.add("PATCH", "/pullrequests/42$", reply(json=_pr(42, status="completed")))
        options = CompletionOptions(
            merge_strategy=MergeStrategy.REBASE_MERGE,
            delete_source_branch=True,
            merge_commit_message="Merged login",
        )

        completed = await client.complete_pull_request(42, options)

        assert completed.status == "completed"
        body = json.loads(server.calls("PATCH")[0].content)
        assert body == {
            "status": "completed",
            "lastMergeSourceCommit": {"commitId": "abc123"},
            "completionOptions": {
                "mergeStrategy": "rebaseMerge",
                "deleteSourceBranch": True,
                "transitionWorkItems": True,
                "mergeCommitMessage": "Merged login",
            },
        }

    @pytest.mark.parametrize(
        "state",
        [
            {"status": "abandoned", "lastMergeSourceCommit": {"commitId": "abc"}},
            {"status": "active"},
        ],
    )
    async def test_complete_refuses_without_patching(self, client, server, state):
        server.add("GET", "/pullrequests/42$", reply(json=_pr(42, **state)))

        with pytest.raises(ConflictError) as exc_info:
            await client.complete_pull_request(42)

        assert exc_info.value.status_code is None
        assert server.calls("PATCH") == []

    async def test_auto_complete_is_set_by_current_user(self, client, server):
        server.add("GET", "/profile/profiles/me$", reply(json={"id": "me-123"}))
        server.add(
            "PATCH",
            "/pullrequests/42$",
            reply(json=_pr(42, autoCompleteSetBy={"id": "me-123", "displayName": "Me"})),
        )

        updated = await client.set_auto_complete(42)

        assert updated.auto_complete_set_by.id == "me-123"
        body = json.loads(server.calls("PATCH")[0].content)
        assert body["autoCompleteSetBy"] == {"id": "me-123"}
        assert body["completionOptions"]["mergeStrategy"] == "squash"

    def test_bypassing_policy_needs_a_reason(self):
        with pytest.raises(ValidationError):
            CompletionOptions(bypass_policy=True)

        options = CompletionOptions(bypass_policy=True, bypass_reason="hotfix")
        assert options.to_api()["bypassReason"] == "hotfix"
        assert MergeStrategy.SQUASH.display_name == "Squash commit"


class TestChanges:
    async def test_changes_of_latest_iteration(self, client, server):
        server.add(
            "GET",
            "/pullrequests/42/iterations$",
            reply(json={"value": [{"id": 1}, {"id": 3}, {"id": 2}]}),
        )
        server.add(
            "GET",
            "/iterations/3/changes$",
            reply(
                json={
                    "changeEntries": [
                        {
                            "changeId": 1,
                            "changeType": "edit",
                            "item": {"path": "/src/app.py", "objectId": "o1"},
                        },
                        {
                            "changeId": 2,
                            "changeType": "rename",
                            "originalPath": "/old.md",
                            "item": {"path": "/new.md"},
                        },
                    ]
                }
            ),
        )

        changes = await client.list_changes(42)

        assert [(c.change_type, c.path) for c in changes] == [
            ("edit", "/src/app.py"),
            ("rename", "/new.md"),
        ]
        assert changes[1].original_path == "/old.md"
        assert changes[0].object_id == "o1"

    async def test_no_iterations_means_no_changes(self, client, server):
        server.add("GET", "/iterations$", reply(json={"value": []}))

        assert await client.list_changes(42) == []
        assert len(server.requests) == 1


class TestIdentitySearch:
    async def test_matches_creators_and_reviewers(self, client, server):
        server.add(
            "GET",
            "/pullrequests$",
            reply(
                json={
                    "value": [
                        _pr(
                            42,
                            reviewers=[
                                {"id": "u3", "displayName": "Carol", "uniqueName": "carol@x.com"},
                                {"id": "u1", "displayName": "Alice"},
                            ],
                        ),
                        _pr(
                            43,
                            createdBy={
                                "id": "u4",
                                "displayName": "Bob Carlson",
                                "uniqueName": "bob@x.com",
                            },
                        ),
                        _pr(44, createdBy={"id": "u5", "displayName": " ", "uniqueName": "car@x.com"}),
                    ]
                }
            ),
        )

        found = await client.search_identities("CAR")

        assert [person.display_name for person in found] == ["Bob Carlson", "Carol"]
        assert server.requests[0].url.params["searchCriteria.status"] == "all"

    async def test_results_are_capped(self, client, server):
        reviewers = [{"id": f"r{i}", "displayName": f"Dev {i:02d}"} for i in range(15)]
        server.add("GET", "/pullrequests$", reply(json={"value": [_pr(42, reviewers=reviewers)]}))

        found = await client.search_identities("dev", limit=10)

        assert len(found) == 10
        assert found[0].display_name == "Dev 00"
