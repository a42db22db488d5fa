import json

from gemini_web_mcp import auth_cli
from gemini_web_mcp.auth import (
    AuthTokens,
    CredentialBag,
    extract_access_token,
    get_cache_path,
    load_cached_tokens,
    parse_cookie_header,
    save_tokens_to_cache,
)
from gemini_web_mcp.constants import IDENTITY_COOKIE, ROTATING_COOKIE
from gemini_web_mcp.exceptions import AuthenticationError

from conftest import APP_PAGE, ACCESS_TOKEN


def test_parse_cookie_header():
    cookies = parse_cookie_header(f" {IDENTITY_COOKIE}=abc.def==; NID=1=2 ;junk; SID=")

    assert cookies == {IDENTITY_COOKIE: "abc.def==", "NID": "1=2", "SID": ""}


def test_extract_access_token():
    assert extract_access_token(APP_PAGE) == ACCESS_TOKEN
    assert extract_access_token('{"SNlM0e":""}') is None
    assert extract_access_token("<html></html>") is None


def test_credential_snapshot_is_a_copy():
    bag = CredentialBag({IDENTITY_COOKIE: "a"})
    snapshot = bag.snapshot()

    bag.set(ROTATING_COOKIE, "b")

    assert ROTATING_COOKIE not in snapshot
    assert bag.cookie_header() == f"{IDENTITY_COOKIE}=a; {ROTATING_COOKIE}=b"
    assert len(bag) == 2


def test_cache_dir_override(isolated_cache_dir):
    assert get_cache_path() == isolated_cache_dir / "auth.json"


def test_token_cache_round_trip():
    assert load_cached_tokens() is None

    save_tokens_to_cache(AuthTokens(cookies={IDENTITY_COOKIE: "a"}, extracted_at=123.0))

    tokens = load_cached_tokens()
    assert tokens.cookies == {IDENTITY_COOKIE: "a"}
    assert tokens.extracted_at == 123.0


def test_corrupt_cache_is_ignored():
    get_cache_path().write_text("{not json")

    assert load_cached_tokens() is None


class TestAuthCli:
    def write_cookies(self, tmp_path, text):
        path = tmp_path / "cookies.txt"
        path.write_text(text)
        return str(path)

    def test_file_import_keeps_essential_cookies(self, tmp_path):
        cookie_file = self.write_cookies(
            tmp_path,
            f"# copied from DevTools\n{IDENTITY_COOKIE}=a; {ROTATING_COOKIE}=b; _ga=tracking; NID=n\n",
        )

        tokens = auth_cli.run_file_cookie_entry(cookie_file)

        assert tokens.cookies == {IDENTITY_COOKIE: "a", ROTATING_COOKIE: "b", "NID": "n"}
        saved = json.loads(get_cache_path().read_text())
        assert saved["cookies"] == tokens.cookies

    def test_file_import_requires_identity(self, tmp_path):
        cookie_file = self.write_cookies(tmp_path, "NID=n; SID=s")

        assert auth_cli.run_file_cookie_entry(cookie_file) is None
        assert not get_cache_path().exists()

    def test_missing_file(self, tmp_path):
        assert auth_cli.run_file_cookie_entry(str(tmp_path / "nope.txt")) is None

    def test_verify_failure_does_not_save(self, tmp_path, monkeypatch):
        async def reject(cookies):
            raise AuthenticationError("expired")

        monkeypatch.setattr(auth_cli, "verify_cookies", reject)
        cookie_file = self.write_cookies(tmp_path, f"{IDENTITY_COOKIE}=a")

        assert auth_cli.run_file_cookie_entry(cookie_file, verify=True) is None
        assert not get_cache_path().exists()

    def test_main_show_tokens(self, monkeypatch, capsys):
        save_tokens_to_cache(AuthTokens(cookies={IDENTITY_COOKIE: "a"}, extracted_at=1.0))
        monkeypatch.setattr("sys.argv", ["gemini-web-mcp-auth", "--show-tokens"])

        assert auth_cli.main() == 0
        assert IDENTITY_COOKIE in capsys.readouterr().out
