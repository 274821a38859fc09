"""Pull request URL parsing and building.

Accepted input follows ``https://<host>/<owner>/<repo>/pull/<number>``; the
scheme may be omitted. Trailing path segments such as ``/files`` or
``/commits``, query strings and fragments are ignored.
"""

from urllib.parse import urlsplit

from prwatch.models.pull_request import PullRequestRef

DEFAULT_HOST = "github.com"


def parse_pull_request_url(url: str) -> PullRequestRef | None:
    """Parse a pull request URL.

    Args:
        url: Browser URL of a pull request

    Returns:
        Parsed reference, or None if the URL does not match the template
    """
    url = url.strip() if url else ""
    if not url:
        return None
    if "://" not in url:
        # Pasted without a scheme, e.g. github.com/owner/repo/pull/1
        url = f"https://{url}"

    parts = urlsplit(url)
    if parts.scheme not in ("http", "https") or not parts.hostname:
        return None

    segments = [s for s in parts.path.split("/") if s]
    if len(segments) < 4 or segments[2] != "pull":
        return None

    owner, repo, _, number_str = segments[:4]
    if not (number_str.isascii() and number_str.isdigit()):
        return None

    number = int(number_str)
    if number <= 0:
        return None

    return PullRequestRef(host=parts.hostname, owner=owner, repo=repo, number=number)


def build_pull_request_url(
    owner: str, repo: str, number: int, host: str = DEFAULT_HOST
) -> str:
    """Build the browsable link for a pull request."""
    return f"https://{host}/{owner}/{repo}/pull/{number}"
