"""
Unit tests for the quota tracker, request ledger, Content Safety client,
blob store, moderation helpers and operator CLI.
"""

import json
import os
import subprocess
import sys
from datetime import datetime, timedelta
from io import BytesIO
from pathlib import Path
from unittest.mock import patch

import pytest
import requests
from click.testing import CliRunner
from PIL import Image

from safety_gateway import cli
from safety_gateway.clients import content_safety_client
from safety_gateway.clients.blob_store import BlobStore, LocalBlobStore
from safety_gateway.core.config import settings
from safety_gateway.core.exceptions import ContentTooLargeException, RecordNotFoundException, ValidationException
from safety_gateway.core.security import detect_image_type, validate_image_upload
from safety_gateway.models.moderation_request import ContentType, RequestStatus
from safety_gateway.models.user import User
from safety_gateway.services import quota_service
from safety_gateway.services.ledger_service import append_record, get_record, query_records
from safety_gateway.services.moderation_service import build_upload_path, reserve_upload_path, storage_extension
from safety_gateway.services.user_service import get_user_by_token

METADATA = {"categories": ["Hate"], "outputType": "FourSeverityLevels", "api_version": "2024-09-01"}

PROJECT_ROOT = Path(__file__).resolve().parents[1]


def make_response(status_code, body=None, text=None):
    """Build a real requests.Response carrying a JSON or raw body."""
    response = requests.Response()
    response.status_code = status_code
    if body is not None:
        response._content = json.dumps(body).encode("utf-8")
    else:
        response._content = (text or "").encode("utf-8")
    return response


class TestQuotaTracker:
    """Admission and usage accounting."""

    @pytest.mark.parametrize("used, limit, admitted", [
        (0, 5, True),
        (4, 5, True),
        (5, 5, False),
        (6, 5, False),
        (0, 0, False),
    ])
    def test_can_admit(self, used, limit, admitted):
        assert quota_service.can_admit(User(requests_used=used, requests_limit=limit)) is admitted

    def test_record_usage_increments_in_database(self, db_session, user):
        quota_service.record_usage(db_session, user)
        quota_service.record_usage(db_session, user, count=2)

        db_session.expire_all()
        assert db_session.get(User, user.id).requests_used == 3

    def test_reset_daily_usage(self, db_session, user, other_user):
        quota_service.record_usage(db_session, user, count=4)
        quota_service.record_usage(db_session, other_user)

        assert quota_service.reset_daily_usage(db_session) == 2

        db_session.expire_all()
        assert db_session.get(User, user.id).requests_used == 0
        assert db_session.get(User, other_user.id).requests_used == 0

    def test_remaining_never_negative(self):
        assert quota_service.remaining(User(requests_used=7, requests_limit=5)) == 0


class TestRequestLedger:
    """Append, search and ownership-scoped reads."""

    def test_search_treats_wildcards_literally(self, db_session, user):
        literal = append_record(db_session, user, ContentType.text, "50% off", METADATA, None, RequestStatus.success)
        append_record(db_session, user, ContentType.text, "500 off", METADATA, None, RequestStatus.success)

        page = query_records(db_session, owner_id=user.id, search="0%")

        assert [r.id for r in page.items] == [literal.id]

    def test_none_and_blank_search_are_equivalent(self, db_session, user):
        for i in range(3):
            append_record(db_session, user, ContentType.text, f"m{i}", METADATA, None, RequestStatus.success)

        unfiltered = query_records(db_session, owner_id=user.id)
        blank = query_records(db_session, owner_id=user.id, search=" ")

        assert [r.id for r in unfiltered.items] == [r.id for r in blank.items]
        assert unfiltered.total == blank.total == 3

    def test_get_record_enforces_ownership(self, db_session, user, other_user):
        record = append_record(db_session, user, ContentType.text, "mine", METADATA, None, RequestStatus.success)

        assert get_record(db_session, owner_id=user.id, record_id=record.id).id == record.id
        with pytest.raises(RecordNotFoundException):
            get_record(db_session, owner_id=other_user.id, record_id=record.id)

    def test_empty_page_count(self, db_session, user):
        page = query_records(db_session, owner_id=user.id)
        assert page.total == 0
        assert page.pages == 0


class TestUploadPaths:
    """Extension normalization and generated storage paths."""

    @pytest.mark.parametrize("filename, content_type, expected", [
        ("photo.jpeg", "image/jpeg", "jpg"),
        ("PHOTO.JPEG", "image/jpeg", "jpg"),
        ("scan.PNG", "image/png", "png"),
        ("photo", "image/png", "png"),
        ("photo", "image/x-unknown-format", "bin"),
        ("", None, "bin"),
    ])
    def test_storage_extension(self, filename, content_type, expected):
        assert storage_extension(filename, content_type) == expected

    def test_build_upload_path(self):
        path = build_upload_path(42, "jpg", now=datetime(2024, 9, 1, 13, 5, 9))
        assert path == "users/42/uploads-20240901-130509.jpg"

    def test_reserve_upload_path_skips_taken_paths(self, tmp_path):
        store = LocalBlobStore(str(tmp_path), signing_key="k")
        now = datetime(2024, 9, 1, 13, 5, 9)

        assert reserve_upload_path(store, 42, "png", now=now) == "users/42/uploads-20240901-130509.png"

        store.put("users/42/uploads-20240901-130509.png", b"first", "image/png")
        store.put("users/42/uploads-20240901-130509-1.png", b"second", "image/png")

        assert reserve_upload_path(store, 42, "png", now=now) == "users/42/uploads-20240901-130509-2.png"


class TestImageValidation:
    """Uploaded bytes are checked, not the declared MIME type."""

    @staticmethod
    def image_bytes(image_format):
        buffer = BytesIO()
        Image.new("RGB", (4, 4), "white").save(buffer, image_format)
        return buffer.getvalue()

    @pytest.mark.parametrize("image_format, expected", [
        ("PNG", "image/png"),
        ("JPEG", "image/jpeg"),
        ("GIF", "image/gif"),
    ])
    def test_detects_format(self, image_format, expected):
        assert detect_image_type(self.image_bytes(image_format)) == expected

    @pytest.mark.parametrize("data", [
        b"just some text, not an image",
        b"\x89PNG\r\n\x1a\n" + b"\x00" * 64,
    ])
    def test_rejects_non_image_bytes(self, data):
        assert detect_image_type(data) is None
        with pytest.raises(ValidationException):
            validate_image_upload("notes.png", data)

    def test_returns_detected_type(self):
        assert validate_image_upload("photo", self.image_bytes("PNG")) == "image/png"

    def test_empty_file(self):
        with pytest.raises(ValidationException, match="Invalid uploaded file"):
            validate_image_upload("cat.png", b"")

    def test_size_limit(self):
        with patch.object(settings, "max_image_bytes", 8):
            with pytest.raises(ContentTooLargeException):
                validate_image_upload("cat.png", self.image_bytes("PNG"))


class TestContentSafetyClient:
    """Outbound calls to Azure AI Content Safety."""

    @pytest.fixture
    def configured(self):
        with patch.object(settings, "azure_content_safety_endpoint", "https://contoso.cognitiveservices.azure.com/"), \
                patch.object(settings, "azure_content_safety_key", "secret-key"):
            yield

    def test_analyze_text_request(self, configured):
        body = {"blocklistsMatch": [], "categoriesAnalysis": [{"category": "Hate", "severity": 2}]}
        with patch("safety_gateway.clients.content_safety_client.requests.post") as mock_post:
            mock_post.return_value = make_response(200, body)
            status, result = content_safety_client.analyze_text("hello", ["Hate"], "FourSeverityLevels")

        assert (status, result) == (200, body)
        url = mock_post.call_args.args[0]
        kwargs = mock_post.call_args.kwargs
        assert url == (
            "https://contoso.cognitiveservices.azure.com/contentsafety/text:analyze"
            f"?api-version={settings.azure_content_safety_api_version}"
        )
        assert kwargs["headers"]["Ocp-Apim-Subscription-Key"] == "secret-key"
        assert kwargs["json"] == {"text": "hello", "categories": ["Hate"], "outputType": "FourSeverityLevels"}

    def test_analyze_image_request(self, configured):
        with patch("safety_gateway.clients.content_safety_client.requests.post") as mock_post:
            mock_post.return_value = make_response(200, {"categoriesAnalysis": []})
            content_safety_client.analyze_image("aGVsbG8=", ["Sexual"], "FourSeverityLevels")

        assert "/contentsafety/image:analyze?" in mock_post.call_args.args[0]
        assert mock_post.call_args.kwargs["json"]["image"] == {"content": "aGVsbG8="}

    def test_error_body_is_returned_verbatim(self, configured):
        error = {"error": {"code": "InvalidRequestBody", "message": "bad"}}
        with patch("safety_gateway.clients.content_safety_client.requests.post") as mock_post:
            mock_post.return_value = make_response(400, error)
            assert content_safety_client.analyze_text("x", ["Hate"], "FourSeverityLevels") == (400, error)

            mock_post.return_value = make_response(503, text="Service Unavailable")
            assert content_safety_client.analyze_text("x", ["Hate"], "FourSeverityLevels") == (503, "Service Unavailable")

            mock_post.return_value = make_response(500)
            assert content_safety_client.analyze_text("x", ["Hate"], "FourSeverityLevels") == (500, None)

    def test_undecodable_success_body_raises(self, configured):
        with patch("safety_gateway.clients.content_safety_client.requests.post") as mock_post:
            mock_post.return_value = make_response(200, text="<html>proxy</html>")
            with pytest.raises(ValueError):
                content_safety_client.analyze_text("x", ["Hate"], "FourSeverityLevels")

    def test_mock_fallback_without_configuration(self):
        with patch.object(settings, "azure_content_safety_endpoint", None), \
                patch("safety_gateway.clients.content_safety_client.requests.post") as mock_post:
            status, body = content_safety_client.analyze_text(
                "I hate this", ["Hate", "SelfHarm", "Sexual", "Violence"], "FourSeverityLevels"
            )

        mock_post.assert_not_called()
        assert status == 200
        severities = {c["category"]: c["severity"] for c in body["categoriesAnalysis"]}
        assert severities == {"Hate": 4, "SelfHarm": 0, "Sexual": 0, "Violence": 0}


class TestLocalBlobStore:
    """Filesystem blob store and signed URLs."""

    def test_incomplete_store_cannot_be_created(self):
        class PutOnlyStore(BlobStore):
            def put(self, path, data, content_type):
                return True

        with pytest.raises(TypeError):
            PutOnlyStore()

    def test_put_and_exists(self, tmp_path):
        store = LocalBlobStore(str(tmp_path), signing_key="k")

        assert store.put("users/1/a.png", b"data", "image/png") is True
        assert store.exists("users/1/a.png") is True
        assert store.exists("users/1/b.png") is False

    def test_put_outside_root_fails(self, tmp_path):
        store = LocalBlobStore(str(tmp_path / "root"), signing_key="k")

        assert store.put("../escape.png", b"data", "image/png") is False
        assert not (tmp_path / "escape.png").exists()

    def test_put_reports_io_failure(self, tmp_path):
        store = LocalBlobStore(str(tmp_path), signing_key="k")
        (tmp_path / "users").write_text("not a directory")

        assert store.put("users/1/a.png", b"data", "image/png") is False

    def test_signature_expiry(self, tmp_path):
        store = LocalBlobStore(str(tmp_path), signing_key="k")
        url = store.temporary_url("users/1/a.png", timedelta(minutes=5))
        query = dict(part.split("=") for part in url.split("?", 1)[1].split("&"))
        expires = int(query["expires"])

        assert store.verify("users/1/a.png", expires, query["signature"]) is True
        assert store.verify("users/1/a.png", expires, query["signature"], now=expires + 1) is False
        assert store.verify("users/1/other.png", expires, query["signature"]) is False


class TestCli:
    """Operator commands."""

    @pytest.fixture
    def runner(self, session_factory):
        with patch.object(cli, "SessionLocal", session_factory):
            yield CliRunner()

    def test_create_user_prints_token(self, runner, db_session):
        result = runner.invoke(cli.main, ["create-user", "--name", "Ada", "--email", "ada@example.com", "--limit", "7"])

        assert result.exit_code == 0
        token = result.output.strip().splitlines()[-1].split(": ")[1]
        user = get_user_by_token(db_session, token)
        assert user.email == "ada@example.com"
        assert user.requests_limit == 7
        assert len(token) == 32

    def test_create_user_rejects_invalid_email(self, runner):
        result = runner.invoke(cli.main, ["create-user", "--name", "Ada", "--email", "not-an-email"])
        assert result.exit_code == 2

    def test_create_user_rejects_duplicate_email(self, runner, user):
        result = runner.invoke(cli.main, ["create-user", "--name", "Again", "--email", "test@example.com"])

        assert result.exit_code == 1
        assert "already exists" in result.output

    def test_reset_daily_requests(self, runner, db_session, user):
        quota_service.record_usage(db_session, user, count=3)

        result = runner.invoke(cli.main, ["reset-daily-requests"])

        assert result.exit_code == 0
        assert "Reset request count for 1 users." in result.output
        db_session.expire_all()
        assert db_session.get(User, user.id).requests_used == 0

    def test_rotate_token(self, runner, db_session, user):
        old_token = user.api_token

        result = runner.invoke(cli.main, ["rotate-token", "--email", "test@example.com"])

        assert result.exit_code == 0
        new_token = result.output.strip().split(": ")[1]
        assert new_token != old_token
        db_session.expire_all()
        assert get_user_by_token(db_session, old_token) is None
        assert get_user_by_token(db_session, new_token).id == user.id

    def test_rotate_token_unknown_user(self, runner):
        result = runner.invoke(cli.main, ["rotate-token", "--email", "nobody@example.com"])
        assert result.exit_code == 1


class TestCliProcess:
    """Commands run as a standalone process against a fresh database."""

    def run_cli(self, env, *args):
        return subprocess.run(
            [sys.executable, "-m", "safety_gateway.cli", *args],
            cwd=PROJECT_ROOT,
            env=env,
            capture_output=True,
            text=True,
            timeout=60,
        )

    def test_init_db_create_user_and_rotate_token(self, tmp_path):
        env = dict(os.environ, DATABASE_URL=f"sqlite:///{tmp_path / 'cli.db'}")

        init = self.run_cli(env, "init-db")
        assert init.returncode == 0, init.stderr

        created = self.run_cli(env, "create-user", "--name", "Ada", "--email", "ada@example.com")
        assert created.returncode == 0, created.stderr
        assert "API token: " in created.stdout

        rotated = self.run_cli(env, "rotate-token", "--email", "ada@example.com")
        assert rotated.returncode == 0, rotated.stderr
        assert "API token: " in rotated.stdout
