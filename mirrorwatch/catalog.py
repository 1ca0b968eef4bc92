"""Built-in catalog of monitored sites.

Each profile only differs by its search aliases and the pattern its
mirror hosts follow, so the catalog is a plain table.
"""

import re

from mirrorwatch.models import SiteProfile


def _host_pattern(stem: str) -> str:
    # Mirrors are often published with a numeric prefix ("5movierulz.tv").
    return r"(?:^|\.)\d*" + re.escape(stem) + r"\.[a-z]{2,6}$"


BUILTIN_PROFILES: tuple[SiteProfile, ...] = (
    SiteProfile(
        name="movierulz",
        display_name="Movierulz",
        query_aliases=(
            "movierulz",
            "movie rulz",
            "movierulz.com",
            "movierulz.in",
            "movierulz.tv",
            "movierulz.ms",
            "movierulz.pl",
            "movierulz latest",
            "movierulz new domain",
            "movierulz working link",
        ),
        domain_pattern=_host_pattern("movierulz"),
        description="Popular movie streaming site",
    ),
    SiteProfile(
        name="moviezap",
        display_name="Moviezap",
        query_aliases=(
            "moviezap",
            "movie zap",
            "moviezap.com",
            "moviezap.in",
            "moviezap.org",
            "moviezap.net",
            "moviezap.co",
            "moviezap latest",
            "moviezap new domain",
            "moviezap working link",
        ),
        domain_pattern=_host_pattern("moviezap"),
        description="Movie download and streaming platform",
    ),
    SiteProfile(
        name="tamilrockers",
        display_name="TamilRockers",
        query_aliases=("tamilrockers", "tamil rockers", "tamilrockers latest"),
        domain_pattern=_host_pattern("tamilrockers"),
        description="Tamil and other regional movies",
    ),
    SiteProfile(
        name="filmywap",
        display_name="Filmywap",
        query_aliases=("filmywap", "filmy wap", "filmywap latest"),
        domain_pattern=_host_pattern("filmywap"),
        description="Bollywood and Hollywood movies",
    ),
    SiteProfile(
        name="worldfree4u",
        display_name="Worldfree4u",
        query_aliases=("worldfree4u", "world free 4u", "worldfree4u latest"),
        domain_pattern=_host_pattern("worldfree4u"),
        description="Dubbed Hollywood movies",
    ),
    SiteProfile(
        name="9xmovies",
        display_name="9xmovies",
        query_aliases=("9xmovies", "9x movies", "9xmovies latest"),
        domain_pattern=r"(?:^|\.)9xmovies\.[a-z]{2,6}$",
        description="Bollywood and dual audio movies",
    ),
    SiteProfile(
        name="khatrimaza",
        display_name="Khatrimaza",
        query_aliases=("khatrimaza", "khatri maza", "khatrimaza latest"),
        domain_pattern=_host_pattern("khatrimaza"),
        description="Hindi dubbed movies",
    ),
    SiteProfile(
        name="bolly4u",
        display_name="Bolly4u",
        query_aliases=("bolly4u", "bolly 4u", "bolly4u latest"),
        domain_pattern=_host_pattern("bolly4u"),
        description="Bollywood movies",
    ),
)

_BY_NAME = {profile.name: profile for profile in BUILTIN_PROFILES}


def get_profile(name: str) -> SiteProfile | None:
    """Return the built-in profile for ``name`` (case-insensitive)."""
    return _BY_NAME.get(name.strip().lower())


def default_profile(name: str) -> SiteProfile:
    """Synthesize a profile for a site that is not in the catalog."""
    key = name.strip().lower()
    return SiteProfile(
        name=key,
        display_name=name.strip(),
        query_aliases=(key, f"{key}.com", f"{key} latest"),
        domain_pattern=r"\b" + re.escape(key) + r"\.[a-z]{2,6}\b",
    )


def builtin_site_names() -> list[str]:
    """Names of the built-in sites in sweep order."""
    return [profile.name for profile in BUILTIN_PROFILES]
