import json

import pytest

from Credpool.core.exceptions import EmptyInputError, ImportParseError, UnrecognizedFormatError
from Credpool.core.models import Account, AuthMethod, Credentials, IdP
from Credpool.core.parsers import (
    FORMAT_CSV,
    infer_format,
    normalize_format,
    parse,
    parse_csv,
    parse_export_json,
    parse_file,
    parse_oidc,
    parse_txt,
    split_csv_line,
)


class TestCsv:
    def test_header_is_skipped_and_columns_are_fixed(self):
        text = (
            "email,nickname,idp,refreshToken,clientId,clientSecret,region\n"
            "a@x.io,alice,Github,rt-a,cid,csecret,eu-west-1\n"
        )
        [candidate] = parse_csv(text)
        assert candidate.email == "a@x.io"
        assert candidate.nickname == "alice"
        assert candidate.provider is IdP.GITHUB
        assert candidate.auth_method is AuthMethod.SOCIAL
        assert candidate.refresh_token == "rt-a"
        assert candidate.client_id == "cid"
        assert candidate.client_secret == "csecret"
        assert candidate.region == "eu-west-1"
        assert candidate.index == 1

    def test_quoted_fields_keep_commas_and_unescape_doubled_quotes(self):
        assert split_csv_line('a@x.io,"Smith, ""J""",Google,rt') == ["a@x.io", 'Smith, "J"', "Google", "rt"]

    def test_rows_missing_email_or_token_are_dropped(self):
        text = "\n".join(
            [
                "email,nickname,idp,refreshToken",
                "a@x.io,a,Google,rt-a",
                ",nobody,Google,rt-b",
                "c@x.io,c,Google,",
                "d@x.io,d,Google,rt-d",
            ]
        )
        candidates = parse_csv(text)
        assert [c.email for c in candidates] == ["a@x.io", "d@x.io"]
        assert [c.index for c in candidates] == [1, 2]

    def test_missing_idp_and_region_default(self):
        [candidate] = parse_csv("h\nz@x.io,,,rt-z\n")
        assert candidate.provider is IdP.GOOGLE
        assert candidate.region == "us-east-1"

    @pytest.mark.parametrize("text", ["", "email,nickname,idp,refreshToken\n", "\n\n"])
    def test_empty_or_header_only_raises(self, text):
        with pytest.raises(EmptyInputError) as exc_info:
            parse_csv(text)
        assert exc_info.value.code == "empty_input"
        assert exc_info.value.fmt == FORMAT_CSV

    def test_all_rows_unusable_raises(self):
        with pytest.raises(EmptyInputError):
            parse_csv("email,nickname,idp,refreshToken\n,a,Google,rt\n")


class TestTxt:
    def test_comma_and_pipe_delimiters_and_comments(self):
        text = "\n".join(
            [
                "# exported 2024-01-01",
                "a@x.io,rt-a,alice,Github",
                "b@x.io | rt-b",
                "",
                "broken-line-without-token",
            ]
        )
        candidates = parse_txt(text)
        assert [(c.email, c.refresh_token) for c in candidates] == [("a@x.io", "rt-a"), ("b@x.io", "rt-b")]
        assert candidates[0].nickname == "alice"
        assert candidates[0].provider is IdP.GITHUB
        assert candidates[1].provider is IdP.GOOGLE

    def test_pipe_wins_when_both_present(self):
        [candidate] = parse_txt("a@x.io|rt,with,commas")
        assert candidate.refresh_token == "rt,with,commas"

    def test_comments_only_raises(self):
        with pytest.raises(EmptyInputError):
            parse_txt("# nothing here\n#still nothing")


class TestOidc:
    def test_single_object_defaults_to_builder_id_idc(self):
        result = parse_oidc('{"refreshToken": "rt-1", "clientId": "c", "clientSecret": "s"}')
        [candidate] = result.candidates
        assert candidate.provider is IdP.BUILDER_ID
        assert candidate.auth_method is AuthMethod.IDC
        assert candidate.region == "us-east-1"

    def test_github_without_auth_method_is_social(self):
        result = parse_oidc([{"refreshToken": "rt-1", "provider": "Github"}])
        assert result.candidates[0].auth_method is AuthMethod.SOCIAL

    def test_explicit_auth_method_wins(self):
        result = parse_oidc([{"refreshToken": "rt-1", "provider": "Google", "authMethod": "IdC"}])
        assert result.candidates[0].auth_method is AuthMethod.IDC

    def test_items_without_refresh_token_are_rejected_with_position(self):
        result = parse_oidc([{"refreshToken": "rt-1"}, {"clientId": "c"}, "junk"])
        assert len(result.candidates) == 1
        assert result.rejected == ["#2: missing refreshToken", "#3: not a credential object"]
        assert result.total == 3

    def test_bytes_payload(self):
        assert len(parse_oidc(b'[{"refreshToken": "rt"}]').candidates) == 1

    def test_empty_array_raises(self):
        with pytest.raises(EmptyInputError):
            parse_oidc("[]")

    def test_scalar_json_is_unrecognized(self):
        with pytest.raises(UnrecognizedFormatError):
            parse_oidc("42")

    def test_invalid_json_is_unrecognized(self):
        with pytest.raises(UnrecognizedFormatError):
            parse_oidc("[{")


def _export(*accounts: Account) -> str:
    return json.dumps({"version": "1.0", "exportedAt": 0, "accounts": [a.to_wire() for a in accounts]})


class TestExportJson:
    def test_full_export_expands_to_accounts(self):
        account = Account(email="a@x.io", credentials=Credentials(refresh_token="rt-a"), tags=["team"])
        result = parse_export_json(_export(account))
        [parsed] = result.accounts
        assert parsed.id == account.id
        assert parsed.email == "a@x.io"
        assert parsed.tags == ["team"]
        assert result.candidates == []

    def test_invalid_entries_are_rejected_not_fatal(self):
        good = Account(email="a@x.io", credentials=Credentials(refresh_token="rt-a"))
        payload = json.loads(_export(good))
        payload["accounts"].append({"email": "b@x.io"})
        payload["accounts"].append("nope")
        result = parse_export_json(json.dumps(payload))
        assert len(result.accounts) == 1
        assert len(result.rejected) == 2

    @pytest.mark.parametrize(
        "text",
        ['{"accounts": []}', '{"version": "1.0"}', "[1, 2]", '{"version": "1.0", "accounts": {}}'],
    )
    def test_json_without_export_shape_is_unrecognized(self, text):
        with pytest.raises(UnrecognizedFormatError):
            parse_export_json(text)

    def test_export_without_accounts_is_empty(self):
        with pytest.raises(EmptyInputError):
            parse_export_json('{"version": "1.0", "accounts": []}')


class TestDispatch:
    def test_normalize_format(self):
        assert normalize_format("CSV") == "csv"
        assert normalize_format(".txt") == "txt"
        with pytest.raises(UnrecognizedFormatError):
            normalize_format("xml")

    def test_parse_errors_are_value_errors(self):
        with pytest.raises(ValueError):
            parse("txt", "")
        assert issubclass(EmptyInputError, ImportParseError)

    def test_infer_format_from_suffix(self):
        assert infer_format("accounts.TXT") == "txt"

    def test_parse_file_strips_bom(self, tmp_path):
        path = tmp_path / "accounts.csv"
        path.write_text("\ufeffemail,nickname,idp,refreshToken\na@x.io,a,Google,rt\n", encoding="utf-8")
        result = parse_file(path)
        assert result.fmt == "csv"
        assert [c.email for c in result.candidates] == ["a@x.io"]

    def test_parse_file_rejects_bytes_that_are_not_utf8(self, tmp_path):
        path = tmp_path / "accounts.txt"
        path.write_bytes(b"a@x.io,rt-\xff\xfe\n")
        with pytest.raises(UnrecognizedFormatError) as excinfo:
            parse_file(path)
        assert excinfo.value.fmt == "txt"
        assert isinstance(excinfo.value.__cause__, UnicodeDecodeError)

    def test_oidc_bytes_are_decoded_or_rejected(self):
        result = parse_oidc(b'\xef\xbb\xbf{"refreshToken": "rt-b"}')
        assert [c.refresh_token for c in result.candidates] == ["rt-b"]
        with pytest.raises(ImportParseError):
            parse_oidc(b'{"refreshToken": "rt-\xff"}')


class TestDefaultRegion:
    def test_rows_without_region_use_the_given_default(self):
        csv_text = (
            "email,nickname,idp,refreshToken,clientId,clientSecret,region\n"
            "a@x.io,a,Google,rt-a,,,\n"
            "b@x.io,b,Google,rt-b,,,ap-south-1\n"
        )
        regions = [c.region for c in parse_csv(csv_text, default_region="eu-west-1")]
        assert regions == ["eu-west-1", "ap-south-1"]
        assert parse_txt("a@x.io,rt-a", default_region="eu-west-1")[0].region == "eu-west-1"
        assert parse_oidc({"refreshToken": "rt"}, default_region="eu-west-1").candidates[0].region == "eu-west-1"

    def test_parse_and_parse_file_forward_the_default(self, tmp_path):
        path = tmp_path / "accounts.txt"
        path.write_text("a@x.io|rt-a\n", encoding="utf-8")
        assert parse_file(path, default_region="eu-west-1").candidates[0].region == "eu-west-1"
        assert parse("oidc", '[{"refreshToken": "rt"}]', default_region="eu-west-1").candidates[0].region == "eu-west-1"
        assert parse("txt", "a@x.io,rt-a").candidates[0].region == "us-east-1"
