import logging
import re
from urllib import parse

from embedrelay.configs import settings
from embedrelay.utils.http_utils import ProxyForwardContext, encode_proxy_url, get_original_scheme

logger = logging.getLogger(__name__)

TAG_URI_PATTERN = re.compile(r'URI="([^"]+)"')


class M3U8Processor:
    def __init__(self, request, forward_context: ProxyForwardContext, rewrite_tag_uris: bool = None):
        """
        Initializes the M3U8Processor with the request and the forward context of the playlist fetch.

        Args:
            request (Request): The incoming HTTP request, used to build absolute relay URLs.
            forward_context (ProxyForwardContext): Target, referer and header overrides of the playlist request.
            rewrite_tag_uris (bool, optional): Also relay URI="..." attributes of tag lines.
                Defaults to the ``rewrite_tag_uris`` setting.
        """
        self.request = request
        self.forward_context = forward_context
        self.rewrite_tag_uris = settings.rewrite_tag_uris if rewrite_tag_uris is None else rewrite_tag_uris
        self.proxy_base_url = str(request.url_for("stream_proxy").replace(scheme=get_original_scheme(request)))
        self.segment_referer = forward_context.referer_override or forward_context.target_url

    def process_m3u8(self, content: str, base_url: str) -> str:
        """
        Rewrites every URI line of a playlist into a relay URL, keeping line order and every tag line intact.

        Args:
            content (str): The m3u8 content to process.
            base_url (str): The URL the playlist was actually fetched from; relative lines resolve against it.

        Returns:
            str: The processed m3u8 content.
        """
        return "\n".join(self.process_line(line, base_url) for line in content.split("\n"))

    def process_line(self, line: str, base_url: str) -> str:
        """
        Process a single line from the m3u8 content.

        Args:
            line (str): The line to process.
            base_url (str): The base URL to resolve relative URLs.

        Returns:
            str: The processed line.
        """
        stripped = line.strip()
        if not stripped:
            return line
        if stripped.startswith("#"):
            if self.rewrite_tag_uris and "URI=" in stripped:
                return self.process_tag_line(line, base_url)
            return line
        try:
            return self.proxy_url(stripped, base_url)
        except ValueError as e:
            logger.debug(f"Leaving unparsable playlist line untouched: {line!r} ({e})")
            return line

    def process_tag_line(self, line: str, base_url: str) -> str:
        """
        Relays the URI attribute of a tag line (EXT-X-KEY, EXT-X-MEDIA, EXT-X-MAP...).

        Args:
            line (str): The tag line to process.
            base_url (str): The base URL to resolve relative URLs.

        Returns:
            str: The processed tag line.
        """
        uri_match = TAG_URI_PATTERN.search(line)
        if not uri_match:
            return line
        original_uri = uri_match.group(1)
        try:
            new_uri = self.proxy_url(original_uri, base_url)
        except ValueError as e:
            logger.debug(f"Leaving unparsable tag URI untouched: {original_uri!r} ({e})")
            return line
        return line.replace(f'URI="{original_uri}"', f'URI="{new_uri}"')

    def proxy_url(self, url: str, base_url: str) -> str:
        """
        Resolves a playlist reference against the playlist URL and wraps it into a relay URL.

        Args:
            url (str): The reference as written in the playlist.
            base_url (str): The base URL to resolve relative URLs.

        Returns:
            str: The relay URL.

        Raises:
            ValueError: If the reference cannot be resolved into an absolute http(s) URL.
        """
        full_url = parse.urljoin(base_url, url)
        parsed = parse.urlparse(full_url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(f"not an absolute http(s) URL: {full_url}")

        return encode_proxy_url(
            self.proxy_base_url,
            full_url,
            referer=self.segment_referer,
            query_params=self.forward_context.carried_query_params(),
        )
