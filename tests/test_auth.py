from botocore.exceptions import NoRegionError, ProfileNotFound

from deployops.core.auth import _format_auth_error, get_session
from deployops.core.formatting import render_filters, render_rows
from deployops.core.jobs import Credential


def test_profile_not_found_message_suggests_configuring_it():
    message = _format_auth_error(ProfileNotFound(profile="deploy"), Credential(profile="deploy"))

    assert "aws configure --profile deploy" in message


def test_missing_region_message():
    assert "region" in _format_auth_error(NoRegionError(), None)


def test_static_keys_win_over_profile():
    session = get_session(
        Credential(profile="ignored", access_key_id="AKIAEXAMPLE", secret_access_key="secret")
    )

    assert session.get_credentials().access_key == "AKIAEXAMPLE"


def test_render_rows_pads_columns_and_fills_empty_tables():
    table = render_rows(["ID", "State"], [], [4, 5])

    assert table.splitlines() == ["ID   | State", "---- | -----", "N/A  | N/A"]


def test_render_filters():
    filters = [{"Name": "tag:env", "Values": ["prod"]}]

    assert render_filters(filters) == " - tag:env = prod"
