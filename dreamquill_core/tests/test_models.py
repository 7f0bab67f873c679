from dreamquill_core.domain.exceptions import RateLimitError, RequestFailed
from dreamquill_core.domain.models import VendorKind, VendorProfile


def test_vendor_kind_parse():
    assert VendorKind.parse("OpenAI") is VendorKind.OPENAI_COMPATIBLE
    assert VendorKind.parse("openai-response") is VendorKind.OPENAI_RESPONSES
    assert VendorKind.parse("anthropic") is VendorKind.CLAUDE
    assert VendorKind.parse(" Google ") is VendorKind.GEMINI
    assert VendorKind.parse(None) is VendorKind.OPENAI_COMPATIBLE
    assert VendorKind.parse("mystery") is VendorKind.OPENAI_COMPATIBLE


def test_profile_describe_hides_credential():
    profile = VendorProfile(
        id=1,
        display_name="p",
        kind=VendorKind.GEMINI,
        base_address="b",
        credential="secret",
        model="m",
    )
    assert "secret" not in str(profile.describe())
    assert profile.with_credential("x").credential == "x"
    assert profile.credential == "secret"


def test_rate_limit_is_request_failed():
    err = RateLimitError("slow down")
    assert isinstance(err, RequestFailed)
    assert err.status == 429
    assert err.code == "RATE_LIMIT"
