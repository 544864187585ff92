"""Basic-Auth transport for the CCB XML API."""
import logging
from typing import Any, Dict, Optional, Union

import requests
from bs4 import BeautifulSoup, Comment, NavigableString, Tag

from harvester.config import HarvestConfig
from harvester.errors import (
    ParseError,
    RequestTimeout,
    UpstreamAPIError,
    UpstreamConnectionError,
    UpstreamHTTPError,
)
from harvester.timeout_guard import with_timeout

logger = logging.getLogger(__name__)

Node = Union[Dict[str, Any], str]

BODY_EXCERPT_LENGTH = 200
ROOT_ELEMENT = 'ccb_api'


def get_path(tree: Any, path: str) -> Any:
    """
    Walk a dotted path through a parsed tree.

    Args:
        tree: Parsed tree (nested dicts)
        path: e.g. "ccb_api.response.groups.group"

    Returns:
        The node at the path, or None if any step is missing
    """
    node = tree
    for key in path.split('.'):
        if not isinstance(node, dict) or key not in node:
            return None
        node = node[key]
    return node


def as_list(value: Any) -> list:
    """Coerce a singular-or-repeated element into a list."""
    if value is None or value == '':
        return []
    if isinstance(value, list):
        return value
    return [value]


def node_text(value: Any) -> str:
    """Text content of a leaf, or of a node carrying attributes and text."""
    if value is None:
        return ''
    if isinstance(value, dict):
        value = value.get('#text', '')
    if isinstance(value, list):
        return ''
    return str(value).strip()


def element_to_node(element: Tag) -> Node:
    """
    Convert a BeautifulSoup element into the generic tree shape.

    Attributes become "@name" keys, child elements are keyed by tag name
    (repeated tags collapse into a list), and a text-only element without
    attributes becomes a plain string. Text next to attributes or children
    is kept under "#text".
    """
    node: Dict[str, Any] = {f"@{key}": value for key, value in element.attrs.items()}
    text_parts = []

    for child in element.children:
        if isinstance(child, Tag):
            value = element_to_node(child)
            existing = node.get(child.name)
            if existing is None:
                node[child.name] = value
            elif isinstance(existing, list):
                existing.append(value)
            else:
                node[child.name] = [existing, value]
        elif isinstance(child, NavigableString) and not isinstance(child, Comment):
            text_parts.append(str(child))

    text = ''.join(text_parts).strip()
    if not node:
        return text
    if text:
        node['#text'] = text
    return node


def parse_xml(body: Union[str, bytes]) -> Dict[str, Any]:
    """
    Parse an XML document into a generic tree keyed by the root tag.

    Pass raw bytes where possible so the XML declaration, not the HTTP
    charset guess, decides the encoding.

    Raises:
        ParseError: If the document has no CCB root element
    """
    soup = BeautifulSoup(body, 'xml')
    root = soup.find(ROOT_ELEMENT)
    if root is None:
        raise ParseError(
            f"Response is not a {ROOT_ELEMENT} document",
            context={'excerpt': _excerpt(body)}
        )
    return {ROOT_ELEMENT: element_to_node(root)}


def raise_for_api_error(tree: Dict[str, Any]) -> None:
    """
    Raise if the parsed response carries an embedded error element.

    Raises:
        UpstreamAPIError: With the first error's message and number
    """
    errors = get_path(tree, f"{ROOT_ELEMENT}.response.errors")
    if errors is None:
        return

    error_nodes = as_list(errors.get('error')) if isinstance(errors, dict) else as_list(errors)
    if not error_nodes:
        return

    first = error_nodes[0]
    message = node_text(first) or 'Unknown CCB API error'
    code = first.get('@number') if isinstance(first, dict) else None
    raise UpstreamAPIError(message, code=code)


class CCBTransport:
    """Issues authenticated requests against the CCB api.php endpoint."""

    def __init__(self, config: HarvestConfig):
        """
        Initialize the transport.

        Args:
            config: Validated harvest configuration
        """
        self.config = config.validate()
        self.url = config.api_url
        self.auth = (config.username, config.password)

    def request(
        self,
        service: str,
        params: Optional[Dict[str, Any]] = None,
        method: str = 'GET'
    ) -> Dict[str, Any]:
        """
        Call a CCB service and return its parsed response tree.

        Args:
            service: CCB service name, sent as the srv parameter
            params: Service-specific parameters
            method: GET (query string) or POST (form-encoded body)

        Returns:
            Parsed tree rooted at {"ccb_api": {...}}

        Raises:
            RequestTimeout: If the call exceeds the configured timeout
            UpstreamHTTPError: On a non-2xx status
            UpstreamConnectionError: If no response was received
            ParseError: If the body is not a CCB XML document
            UpstreamAPIError: If the body carries an embedded error
        """
        payload = {'srv': service}
        payload.update(params or {})
        label = f"{method} {service} {_describe(params)}".strip()

        logger.debug(f"CCB request: {label}")
        response = with_timeout(
            lambda: self._send(method, payload, label),
            self.config.timeout,
            label
        )

        if not 200 <= response.status_code < 300:
            logger.warning(f"CCB {service} returned HTTP {response.status_code}")
            raise UpstreamHTTPError(
                response.status_code,
                response.text[:BODY_EXCERPT_LENGTH]
            )

        tree = parse_xml(response.content)
        raise_for_api_error(tree)
        return tree

    def _send(self, method: str, payload: Dict[str, Any], label: str) -> requests.Response:
        """Perform the HTTP call, translating requests exceptions."""
        try:
            if method.upper() == 'POST':
                return requests.post(
                    self.url,
                    data=payload,
                    auth=self.auth,
                    timeout=self.config.timeout
                )
            return requests.get(
                self.url,
                params=payload,
                auth=self.auth,
                timeout=self.config.timeout
            )
        except requests.Timeout as e:
            raise RequestTimeout(label, self.config.timeout) from e
        except requests.RequestException as e:
            raise UpstreamConnectionError(f"{label}: {e}") from e


def _describe(params: Optional[Dict[str, Any]]) -> str:
    if not params:
        return ''
    return ' '.join(f"{key}={value}" for key, value in params.items())


def _excerpt(body: Union[str, bytes]) -> str:
    if isinstance(body, bytes):
        body = body.decode('utf-8', errors='replace')
    return body[:BODY_EXCERPT_LENGTH]
