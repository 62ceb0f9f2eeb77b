"""Tests for the GitHub REST gateway."""

import base64
import json

import pytest
from httpx import Response

from autopatch.github_gateway import (
    CommitDetails,
    GitHubError,
    GitHubGateway,
    RepositoryGateway,
)

HOST = "api.github.test"
REPO = "/repos/acme/shop"


def _b64(text: str) -> str:
    return base64.b64encode(text.encode("utf-8")).decode("ascii")


@pytest.fixture
def gw(github_config):
    return GitHubGateway(github_config)


def test_gateway_implements_protocol(gw):
    assert isinstance(gw, RepositoryGateway)


def test_auth_header_only_with_token():
    from autopatch.config import GitHubConfig

    assert "Authorization" not in GitHubGateway(GitHubConfig(token=""))._headers()
    headers = GitHubGateway(GitHubConfig(token="t0k"))._headers()
    assert headers["Authorization"] == "Bearer t0k"
    assert headers["User-Agent"] == "auto-patch-bot"


class TestCommitDetails:
    def test_prefers_account_login(self):
        details = CommitDetails.from_api(
            {
                "sha": "abc",
                "author": {"login": "malak", "avatar_url": "https://a/1.png"},
                "commit": {"author": {"name": "Malak Abed"}},
                "files": [{"filename": "a.js", "status": "removed"}],
            }
        )
        assert details.author_name == "malak"
        assert details.author_avatar == "https://a/1.png"
        assert details.files[0].is_removed

    def test_falls_back_to_git_author(self):
        details = CommitDetails.from_api(
            {"sha": "abc", "author": None, "commit": {"author": {"name": "Malak Abed"}}}
        )
        assert details.author_name == "Malak Abed"
        assert details.files is None

    def test_unknown_author(self):
        assert CommitDetails.from_api({"sha": "abc"}).author_name == "Unknown"


class TestGitHubGateway:
    @pytest.mark.asyncio
    async def test_list_recent_commits(self, mock_http, gw):
        route = mock_http.get(host=HOST, path=f"{REPO}/commits").mock(
            return_value=Response(200, json=[{"sha": "new"}, {"sha": "old"}])
        )

        assert await gw.list_recent_commits("acme", "shop", 20) == ["new", "old"]
        assert route.calls.last.request.url.params["per_page"] == "20"

    @pytest.mark.asyncio
    async def test_get_default_branch(self, mock_http, gw):
        mock_http.get(host=HOST, path=REPO).mock(
            return_value=Response(200, json={"default_branch": "trunk"})
        )

        assert await gw.get_default_branch("acme", "shop") == "trunk"

    @pytest.mark.asyncio
    async def test_get_file_decodes_content(self, mock_http, gw):
        route = mock_http.get(host=HOST, path=f"{REPO}/contents/src/app.js").mock(
            return_value=Response(
                200,
                json={"type": "file", "sha": "blob1", "content": _b64("let x = 1;\n")},
            )
        )

        remote = await gw.get_file("acme", "shop", "src/app.js", "abc123")

        assert remote.sha == "blob1"
        assert remote.content == "let x = 1;\n"
        assert route.calls.last.request.url.params["ref"] == "abc123"

    @pytest.mark.asyncio
    async def test_get_file_tolerates_binary_content(self, mock_http, gw):
        png = b"\x89PNG\r\n\x1a\n\x00\x00"
        mock_http.get(host=HOST, path=f"{REPO}/contents/logo.png").mock(
            return_value=Response(
                200,
                json={
                    "type": "file",
                    "sha": "blob2",
                    "content": base64.b64encode(png).decode("ascii"),
                },
            )
        )

        remote = await gw.get_file("acme", "shop", "logo.png", "abc123")

        assert remote.sha == "blob2"
        assert remote.content.startswith("�PNG")

    @pytest.mark.asyncio
    async def test_get_file_not_found(self, mock_http, gw):
        mock_http.get(host=HOST, path=f"{REPO}/contents/missing.js").mock(
            return_value=Response(404, json={"message": "Not Found"})
        )

        with pytest.raises(GitHubError) as exc_info:
            await gw.get_file("acme", "shop", "missing.js", "auto-patch")

        assert exc_info.value.is_not_found
        assert exc_info.value.message == "Not Found"

    @pytest.mark.asyncio
    async def test_get_file_rejects_directory(self, mock_http, gw):
        mock_http.get(host=HOST, path=f"{REPO}/contents/src").mock(
            return_value=Response(200, json=[{"name": "app.js"}])
        )

        with pytest.raises(GitHubError):
            await gw.get_file("acme", "shop", "src", "main")

    @pytest.mark.asyncio
    async def test_branch_head_and_forced_update(self, mock_http, gw):
        mock_http.get(host=HOST, path=f"{REPO}/git/ref/heads/main").mock(
            return_value=Response(200, json={"object": {"sha": "tip"}})
        )
        update = mock_http.patch(host=HOST, path=f"{REPO}/git/refs/heads/auto-patch").mock(
            return_value=Response(200, json={"object": {"sha": "tip"}})
        )

        sha = await gw.get_branch_head("acme", "shop", "main")
        await gw.update_branch("acme", "shop", "auto-patch", sha, force=True)

        assert json.loads(update.calls.last.request.content) == {"sha": "tip", "force": True}

    @pytest.mark.asyncio
    async def test_update_missing_branch_is_missing(self, mock_http, gw):
        mock_http.patch(host=HOST, path=f"{REPO}/git/refs/heads/auto-patch").mock(
            return_value=Response(422, json={"message": "Reference does not exist"})
        )

        with pytest.raises(GitHubError) as exc_info:
            await gw.update_branch("acme", "shop", "auto-patch", "tip", force=True)

        assert exc_info.value.is_missing
        assert not exc_info.value.is_not_found

    @pytest.mark.asyncio
    async def test_create_branch(self, mock_http, gw):
        route = mock_http.post(host=HOST, path=f"{REPO}/git/refs").mock(
            return_value=Response(201, json={"ref": "refs/heads/auto-patch"})
        )

        await gw.create_branch("acme", "shop", "auto-patch", "tip")

        assert json.loads(route.calls.last.request.content) == {
            "ref": "refs/heads/auto-patch",
            "sha": "tip",
        }

    @pytest.mark.asyncio
    async def test_put_file_encodes_and_passes_sha(self, mock_http, gw):
        route = mock_http.put(host=HOST, path=f"{REPO}/contents/src/app.js").mock(
            return_value=Response(200, json={"content": {"sha": "blob2"}})
        )

        await gw.put_file(
            "acme", "shop", "src/app.js", "safe();\n",
            branch="auto-patch", message="fix", sha="blob1",
        )

        body = json.loads(route.calls.last.request.content)
        assert base64.b64decode(body["content"]).decode() == "safe();\n"
        assert body["branch"] == "auto-patch"
        assert body["sha"] == "blob1"

    @pytest.mark.asyncio
    async def test_put_new_file_omits_sha(self, mock_http, gw):
        route = mock_http.put(host=HOST, path=f"{REPO}/contents/new.js").mock(
            return_value=Response(201, json={"content": {"sha": "blob3"}})
        )

        await gw.put_file("acme", "shop", "new.js", "x", branch="auto-patch", message="m")

        assert "sha" not in json.loads(route.calls.last.request.content)

    @pytest.mark.asyncio
    async def test_list_open_pull_requests_by_head(self, mock_http, gw):
        route = mock_http.get(host=HOST, path=f"{REPO}/pulls").mock(
            return_value=Response(
                200,
                json=[
                    {
                        "number": 3,
                        "html_url": "https://github.test/acme/shop/pull/3",
                        "head": {"ref": "auto-patch"},
                        "base": {"ref": "main"},
                    }
                ],
            )
        )

        pulls = await gw.list_open_pull_requests("acme", "shop", "auto-patch")

        assert pulls[0].number == 3
        assert pulls[0].head == "auto-patch"
        params = route.calls.last.request.url.params
        assert params["head"] == "acme:auto-patch"
        assert params["state"] == "open"

    @pytest.mark.asyncio
    async def test_create_pull_request(self, mock_http, gw):
        route = mock_http.post(host=HOST, path=f"{REPO}/pulls").mock(
            return_value=Response(
                201, json={"number": 8, "html_url": "https://github.test/acme/shop/pull/8"}
            )
        )

        pull = await gw.create_pull_request(
            "acme", "shop", title="T", head="auto-patch", base="main", body="B"
        )

        assert pull.html_url.endswith("/pull/8")
        assert json.loads(route.calls.last.request.content)["head"] == "auto-patch"
