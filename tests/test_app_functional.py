import io
import re
import tempfile
import unittest
from pathlib import Path
from unittest import mock
from urllib.parse import urlparse

from werkzeug.security import generate_password_hash

from pushbox import storage
from pushbox.app import create_app
from pushbox.config import build_config

API_KEY = "test-upload-key"
EXTERNAL_URL = "http://share.test/"


class PushboxAppTestCase(unittest.TestCase):
    config_overrides = {}
    app_overrides = {}

    def setUp(self):
        self.storage_dir = tempfile.TemporaryDirectory()
        base = Path(self.storage_dir.name)
        raw_config = {
            "base_path": "files",
            "external_url": EXTERNAL_URL,
            "key": "test-secret-key",
            "api_keys": [{"key": API_KEY, "comment": "tests"}],
            "users": [{"username": "alice", "password": generate_password_hash("wonderland")}],
        }
        raw_config.update(self.config_overrides)
        self.config = build_config(raw_config, base)
        self.root = self.config.storage_root

        overrides = {"TESTING": True, "WTF_CSRF_ENABLED": False, "RATELIMIT_ENABLED": False}
        overrides.update(self.app_overrides)
        self.app = create_app(self.config, overrides)
        self.client = self.app.test_client()

    def tearDown(self):
        self.storage_dir.cleanup()

    def upload(self, kind, payload, filename, api_key=API_KEY):
        headers = {"X-API-Key": api_key} if api_key else {}
        return self.client.post(
            f"/upload/{kind}",
            data={"pushfile": (io.BytesIO(payload), filename)},
            headers=headers,
            content_type="multipart/form-data",
        )

    def upload_name(self, kind, payload, filename):
        response = self.upload(kind, payload, filename)
        self.assertEqual(response.status_code, 200, response.data)
        url = response.get_json()["url"]
        self.assertTrue(url.startswith(EXTERNAL_URL))
        return urlparse(url).path.lstrip("/")

    def login(self, username="alice", password="wonderland"):
        return self.client.post(
            "/login",
            data={"username": username, "password": password},
            follow_redirects=False,
        )


class PushboxAppIntegrationTests(PushboxAppTestCase):
    def test_file_upload_and_download_flow(self):
        name = self.upload_name("file", b"%PDF-1.4 quarterly numbers", "report.pdf")

        self.assertTrue((self.root / f"{name}.pdf").is_file())
        self.assertTrue((self.root / f"{name}.info.json").is_file())

        response = self.client.get(f"/{name}")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data, b"%PDF-1.4 quarterly numbers")
        disposition = response.headers.get("Content-Disposition", "")
        self.assertIn("inline", disposition)
        self.assertIn("report.pdf", disposition)
        self.assertEqual(response.mimetype, "application/pdf")
        response.close()

    def test_text_upload_renders_page(self):
        name = self.upload_name("text", b"hello world", "note.txt")

        response = self.client.get(f"/{name}")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.mimetype, "text/html")
        body = response.data.decode()
        self.assertIn("hello world", body)
        self.assertIn("note.txt", body)
        self.assertIn(EXTERNAL_URL + name, body)

    def test_text_is_escaped_in_page(self):
        name = self.upload_name("text", b"<script>alert(1)</script>", "x.html")

        body = self.client.get(f"/{name}").data.decode()

        self.assertNotIn("<script>alert(1)</script>", body)
        self.assertIn("&lt;script&gt;", body)

    def test_text_from_plain_form_field(self):
        response = self.client.post(
            "/upload/text",
            data={"pushfile": "pasted from a form", "filename": "paste.txt"},
            headers={"X-API-Key": API_KEY},
            content_type="multipart/form-data",
        )
        self.assertEqual(response.status_code, 200)
        name = urlparse(response.get_json()["url"]).path.lstrip("/")

        self.assertIn("pasted from a form", self.client.get(f"/{name}").data.decode())

    def test_pasted_link_redirects(self):
        name = self.upload_name("text", b"https://example.com/landing", "link.txt")

        response = self.client.get(f"/{name}", follow_redirects=False)

        self.assertEqual(response.status_code, 302)
        self.assertEqual(response.headers["Location"], "https://example.com/landing")

    def test_upload_requires_api_key(self):
        for api_key in (None, "wrong-key"):
            with self.subTest(api_key=api_key):
                response = self.upload("file", b"data", "a.txt", api_key=api_key)
                self.assertEqual(response.status_code, 401)
                self.assertIn("error", response.get_json())
        self.assertEqual(list(self.root.iterdir()), [])

    def test_upload_errors_are_json(self):
        cases = [
            ("url", "link.txt", 400),
            ("folder", "a.txt", 400),
            ("file", "", 400),
        ]
        for kind, filename, status in cases:
            with self.subTest(kind=kind, filename=filename):
                response = self.upload(kind, b"https://example.com", filename)
                self.assertEqual(response.status_code, status)
                self.assertIn("error", response.get_json())

    def test_upload_without_field(self):
        response = self.client.post(
            "/upload/file",
            data={"other": "value"},
            headers={"X-API-Key": API_KEY},
            content_type="multipart/form-data",
        )
        self.assertEqual(response.status_code, 400)
        self.assertIn("pushfile", response.get_json()["error"])

    def test_unknown_and_unsafe_paths_are_not_found(self):
        name = self.upload_name("file", b"data", "a.txt")
        for path in ("/NoSuchThing", f"/{name}.info.json", f"/{name}.txt", "/nested/path"):
            with self.subTest(path=path):
                response = self.client.get(path)
                self.assertEqual(response.status_code, 404)
                self.assertIn("Not found", response.data.decode())

    def test_missing_blob_is_not_found(self):
        name = self.upload_name("file", b"data", "a.txt")
        (self.root / f"{name}.txt").unlink()

        self.assertEqual(self.client.get(f"/{name}").status_code, 404)

    def test_static_assets_are_served(self):
        response = self.client.get("/css/main.css")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.mimetype, "text/css")

        response = self.client.get("/js/manage.js")
        self.assertEqual(response.status_code, 200)
        self.assertIn("listing", response.data.decode())

    def test_responses_carry_request_id_and_security_headers(self):
        response = self.client.get("/", headers={"X-Request-ID": "abc123"})

        self.assertEqual(response.headers["X-Request-ID"], "abc123")
        self.assertEqual(response.headers["X-Frame-Options"], "DENY")
        self.assertEqual(response.headers["X-Content-Type-Options"], "nosniff")

    def test_storage_failure_on_upload_is_json_500(self):
        with mock.patch.object(storage, "save", side_effect=storage.StorageIOError("disk full")):
            with self.assertLogs("pushbox.lifecycle", level="ERROR") as captured:
                response = self.upload("file", b"%PDF", "report.pdf")

        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.get_json(), {"error": "disk full"})
        self.assertTrue(any("storage_failure" in line for line in captured.output))
        self.assertEqual(list(self.root.iterdir()), [])

    def test_upload_too_large(self):
        self.app.config["MAX_CONTENT_LENGTH"] = 64

        response = self.upload("file", b"x" * 1024, "big.bin")

        self.assertEqual(response.status_code, 413)
        self.assertEqual(response.get_json()["error"], "File too large")


class PushboxSessionTests(PushboxAppTestCase):
    def test_index_shows_login_form(self):
        response = self.client.get("/")
        self.assertEqual(response.status_code, 200)
        self.assertIn('name="password"', response.data.decode())

    def test_wrong_password_redirects_with_error(self):
        response = self.login(password="not-it")

        self.assertEqual(response.status_code, 302)
        self.assertTrue(response.headers["Location"].endswith(".?error=invalid-login"))

        page = self.client.get("/?error=invalid-login")
        self.assertIn("Invalid username or password", page.data.decode())

        manage = self.client.get("/manage")
        self.assertEqual(manage.status_code, 401)
        self.assertEqual(manage.data.decode(), "You are not logged in")

    def test_unknown_user_rejected(self):
        response = self.login(username="mallory")
        self.assertTrue(response.headers["Location"].endswith(".?error=invalid-login"))

    def test_login_manage_and_logout(self):
        name = self.upload_name("file", b"%PDF", "report.pdf")

        response = self.login()
        self.assertEqual(response.status_code, 302)
        self.assertTrue(response.headers["Location"].endswith("manage"))
        cookie_header = "; ".join(response.headers.getlist("Set-Cookie"))
        self.assertIn("pushbox_session=", cookie_header)
        self.assertIn("HttpOnly", cookie_header)

        index = self.client.get("/", follow_redirects=False)
        self.assertEqual(index.status_code, 302)

        manage = self.client.get("/manage")
        self.assertEqual(manage.status_code, 200)
        body = manage.data.decode()
        self.assertIn(name, body)
        self.assertIn("report.pdf", body)

        logout = self.client.get("/logout", follow_redirects=False)
        self.assertEqual(logout.status_code, 302)
        self.assertEqual(self.client.get("/manage").status_code, 401)

    def test_listing_is_newest_first_json(self):
        first = self.upload_name("file", b"1", "one.txt")
        second = self.upload_name("text", b"https://example.com/", "two.txt")
        self.login()

        payload = self.client.get("/listing").get_json()

        self.assertEqual(payload["username"], "alice")
        names = [entry["name"] for entry in payload["files"]]
        self.assertEqual(sorted(names), sorted([first, second]))
        metas = {entry["name"]: entry["meta"] for entry in payload["files"]}
        self.assertEqual(metas[first]["type"], "file")
        self.assertEqual(metas[first]["filename"], "one.txt")
        self.assertEqual(metas[second]["type"], "url")
        self.assertEqual(metas[second]["url"], "https://example.com/")

    def test_session_routes_require_login(self):
        name = self.upload_name("file", b"data", "a.txt")
        for path in ("/manage", "/listing", f"/delete/{name}", f"/rename/{name}/Other"):
            with self.subTest(path=path):
                self.assertEqual(self.client.get(path).status_code, 401)
        self.assertTrue((self.root / f"{name}.info.json").exists())

    def test_delete_through_http(self):
        name = self.upload_name("file", b"data", "a.txt")
        self.login()

        response = self.client.get(f"/delete/{name}")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data.decode(), "Deleted")
        self.assertEqual(list(self.root.iterdir()), [])

        self.assertEqual(self.client.get(f"/{name}").status_code, 404)
        self.assertEqual(self.client.get(f"/delete/{name}").status_code, 404)
        self.assertEqual(self.client.get("/delete/bad.name").status_code, 400)

    def test_rename_through_http(self):
        name = self.upload_name("file", b"%PDF", "report.pdf")
        other = self.upload_name("file", b"other", "other.txt")
        self.login()

        response = self.client.get(f"/rename/{name}/Quarterly")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data.decode(), "Renamed")

        self.assertEqual(self.client.get(f"/{name}").status_code, 404)
        moved = self.client.get("/Quarterly")
        self.assertEqual(moved.status_code, 200)
        self.assertEqual(moved.data, b"%PDF")
        moved.close()

        self.assertEqual(self.client.get(f"/rename/Quarterly/{other}").status_code, 409)
        self.assertEqual(self.client.get("/rename/Quarterly/manage").status_code, 400)
        self.assertEqual(self.client.get("/rename/Missing/Anything").status_code, 404)

    def test_storage_failure_on_rename_is_text_500(self):
        name = self.upload_name("file", b"%PDF", "report.pdf")
        self.login()

        with mock.patch.object(storage, "save", side_effect=storage.StorageIOError("disk full")):
            response = self.client.get(f"/rename/{name}/Quarterly")

        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.mimetype, "text/plain")
        self.assertEqual(response.data.decode(), "disk full")
        self.assertTrue((self.root / f"{name}.pdf").is_file())
        self.assertFalse((self.root / "Quarterly.pdf").exists())

        follow_up = self.client.get(f"/{name}")
        self.assertEqual(follow_up.status_code, 200)
        follow_up.close()

    def test_unexpected_os_error_is_logged_500(self):
        name = self.upload_name("file", b"data", "a.txt")
        self.login()

        with mock.patch.object(storage, "delete_item", side_effect=PermissionError("denied")):
            with self.assertLogs("pushbox.lifecycle", level="ERROR") as captured:
                response = self.client.get(f"/delete/{name}")

        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.data.decode(), "Internal storage error")
        self.assertTrue(any("unexpected_os_error" in line for line in captured.output))
        self.assertEqual(self.client.get("/manage").status_code, 200)

    def test_non_ascii_username_is_an_invalid_login(self):
        response = self.login(username="jos\u00e9", password="x")

        self.assertEqual(response.status_code, 302)
        self.assertTrue(response.headers["Location"].endswith(".?error=invalid-login"))

    def test_rename_then_delete_leaves_nothing(self):
        name = self.upload_name("text", b"hello world", "note.txt")
        self.login()

        self.assertEqual(self.client.get(f"/rename/{name}/Notes").status_code, 200)
        self.assertEqual(self.client.get("/delete/Notes").status_code, 200)

        self.assertEqual(list(self.root.iterdir()), [])


class PushboxCsrfTests(PushboxAppTestCase):
    app_overrides = {"WTF_CSRF_ENABLED": True}

    def test_login_without_token_is_rejected(self):
        response = self.login()

        self.assertEqual(response.status_code, 302)
        self.assertTrue(response.headers["Location"].endswith(".?error=expired-form"))
        self.assertEqual(self.client.get("/manage").status_code, 401)

    def test_login_with_form_token(self):
        page = self.client.get("/").data.decode()
        match = re.search(r'name="csrf_token" value="([^"]+)"', page)
        self.assertIsNotNone(match)

        response = self.client.post(
            "/login",
            data={"username": "alice", "password": "wonderland", "csrf_token": match.group(1)},
        )

        self.assertEqual(response.status_code, 302)
        self.assertTrue(response.headers["Location"].endswith("manage"))

    def test_upload_api_is_exempt(self):
        self.upload_name("file", b"data", "a.txt")


class PushboxRateLimitTests(PushboxAppTestCase):
    config_overrides = {"login_rate_limit_per_minute": 1, "upload_rate_limit_per_hour": 1}
    app_overrides = {"RATELIMIT_ENABLED": True}

    def test_login_is_rate_limited(self):
        self.assertEqual(self.login(password="wrong").status_code, 302)
        self.assertEqual(self.login(password="wrong").status_code, 429)

    def test_bad_api_keys_count_against_upload_limit(self):
        self.assertEqual(self.upload("file", b"x", "a.txt", api_key="guess-1").status_code, 401)
        self.assertEqual(self.upload("file", b"x", "a.txt", api_key="guess-2").status_code, 429)


if __name__ == "__main__":
    unittest.main()
