"""Static configuration for the supported generation platforms."""

from dataclasses import dataclass
from enum import Enum


class PlatformKey(str, Enum):
    """Supported generation platforms."""

    JIMENG = "jimeng"
    XYQ = "xyq"


DEFAULT_PLATFORM = PlatformKey.JIMENG

DEFAULT_ASSISTANT_ID = 513695
PLATFORM_CODE = "7"
USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/132.0.0.0 Safari/537.36"
)


@dataclass(frozen=True)
class PlatformConfig:
    """Everything that differs between the two platforms."""

    key: str
    name: str
    base_url: str
    generate_page_url: str
    cookie_domain: str
    app_version: str
    # Cookie that carries the session; named in re-login hints
    session_cookie_field: str
    # Candidate cookie names for extracting the session token, highest priority first
    session_cookie_keys: tuple[str, ...]
    # Cookie names that all receive the session token
    session_cookie_aliases: tuple[str, ...]
    static_cookies: tuple[tuple[str, str], ...] = ()
    web_id_cookie: str | None = None
    # Cookies whose names contain this marker live on the platform subdomain
    subdomain_cookie_marker: str | None = None
    subdomain_cookie_domain: str | None = None
    app_id: str | None = None


JIMENG = PlatformConfig(
    key=PlatformKey.JIMENG.value,
    name="Jimeng",
    base_url="https://jimeng.jianying.com",
    generate_page_url="https://jimeng.jianying.com/ai-tool/video/generate",
    cookie_domain=".jianying.com",
    app_version="8.4.0",
    session_cookie_field="sessionid",
    session_cookie_keys=(
        "sessionid",
        "sessionid_ss",
        "sid_tt",
        "sessionid_pippitcn_web",
        "sessionid_ss_pippitcn_web",
        "sid_tt_pippitcn_web",
    ),
    session_cookie_aliases=("sid_tt", "sessionid", "sessionid_ss"),
    static_cookies=(
        ("is_staff_user", "false"),
        ("store-region", "cn-gd"),
        ("store-region-src", "uid"),
    ),
    web_id_cookie="_tea_web_id",
)

XYQ = PlatformConfig(
    key=PlatformKey.XYQ.value,
    name="Xiaoyunque",
    base_url="https://xyq.jianying.com",
    generate_page_url="https://xyq.jianying.com/home?tab_name=home",
    cookie_domain=".jianying.com",
    app_version="5.8.0",
    session_cookie_field="sessionid_pippitcn_web",
    session_cookie_keys=(
        "sessionid_pippitcn_web",
        "sessionid_ss_pippitcn_web",
        "sid_tt_pippitcn_web",
        "sessionid",
        "sessionid_ss",
        "sid_tt",
    ),
    session_cookie_aliases=(
        "sid_tt_pippitcn_web",
        "sessionid_pippitcn_web",
        "sessionid_ss_pippitcn_web",
    ),
    static_cookies=(("is_staff_user_pippitcn_web", "false"),),
    subdomain_cookie_marker="_pippitcn_web",
    subdomain_cookie_domain=".xyq.jianying.com",
    app_id="795647",
)

PLATFORMS: dict[str, PlatformConfig] = {
    JIMENG.key: JIMENG,
    XYQ.key: XYQ,
}


def get_platform(raw: str | None) -> PlatformConfig | None:
    """
    Resolve a platform selector.

    Empty selectors resolve to the default platform; unknown ones to None.
    """
    if raw is None or not raw.strip():
        return PLATFORMS[DEFAULT_PLATFORM.value]
    return PLATFORMS.get(raw.strip())
