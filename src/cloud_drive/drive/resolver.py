"""Path resolver — walks folder paths through the node cache and the service."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Callable

from cloud_drive.drive.models import (
    FIELD_DATA,
    FIELD_ID,
    FIELD_INFO,
    FIELD_KIND,
    FIELD_NAME,
    FIELD_NODE_ID,
    FIELD_PARENTS,
    KIND_FOLDER,
    NodeId,
    escape_filter_value,
)
from cloud_drive.drive.paths import Component, ComponentKind, PathLike, split_path
from cloud_drive.errors import BadPathError, ResponseBadJsonError, UnknownServerError
from cloud_drive.transport.rest import RestRequest, decode_server_object

if TYPE_CHECKING:
    from cloud_drive.session.models import Endpoint
    from cloud_drive.storage.node_cache import NodeCache
    from cloud_drive.transport.retry import RetryOrchestrator

logger = logging.getLogger(__name__)

HTTP_OK = 200
HTTP_CREATED = 201
HTTP_CONFLICT = 409


def _check_components(components: list[Component]) -> None:
    for component in components:
        if component.kind is ComponentKind.PARENT:
            raise BadPathError("Parent directory components are not supported")


class PathResolver:
    """Translates slash-separated paths into node ids.

    Each (parent, name) step is answered from the node cache when possible
    and otherwise looked up remotely; every id learned from the service is
    written back to the cache.
    """

    def __init__(
        self,
        cache: NodeCache,
        orchestrator: RetryOrchestrator,
        endpoint: Callable[[float | None], Endpoint],
        root_id: Callable[[], NodeId],
    ) -> None:
        """Initialise the resolver.

        Args:
            cache: Node cache consulted before any remote lookup.
            orchestrator: Retry orchestrator for the remote calls.
            endpoint: Returns a fresh endpoint, given an optional deadline.
            root_id: Returns the id of the drive's root folder.
        """
        self._cache = cache
        self._orchestrator = orchestrator
        self._endpoint = endpoint
        self._root_id = root_id

    def find_child(
        self,
        parent: NodeId,
        name: str,
        deadline: float | None = None,
    ) -> NodeId | None:
        """Return the id of ``name`` directly under ``parent``, or None if absent.

        Raises:
            UnknownServerError: The lookup answered with an unexpected status.
        """
        cached = self._cache.get(parent, name)
        if cached is not None:
            return NodeId(cached)

        request = (
            RestRequest.get(self._endpoint(deadline).metadata_url)
            .url_push("nodes")
            .url_push(parent)
            .url_push("children")
            .url_query([("filters", f"{FIELD_NAME}:{escape_filter_value(name)}")])
        )
        status_code, body = self._orchestrator.execute(request, True, deadline)
        if status_code != HTTP_OK:
            raise UnknownServerError(status_code, body)

        nodes = decode_server_object(body, FIELD_DATA)[FIELD_DATA]
        if not isinstance(nodes, list):
            raise ResponseBadJsonError("data is not a list", body)
        if not nodes:
            return None
        child = _node_id(nodes[0], body)
        self._cache.put(parent, name, child)
        return child

    def resolve(
        self,
        path: PathLike,
        start: NodeId | None = None,
        deadline: float | None = None,
    ) -> NodeId | None:
        """Resolve ``path`` relative to ``start`` (the root folder by default).

        Returns:
            The id of the last component, or None if any component does not exist.

        Raises:
            BadPathError: The path contains ``..`` or non-portable names.
        """
        components = split_path(path)
        _check_components(components)

        current = start if start is not None else self._root_id()
        for component in components:
            if component.kind is ComponentKind.ROOT:
                current = self._root_id()
            elif component.kind is ComponentKind.NAME:
                child = self.find_child(current, component.name, deadline)
                if child is None:
                    logger.debug("[resolve] path component not found; name:%s", component.name)
                    return None
                current = child
        return current

    def mkdir(
        self,
        name: str,
        parent: NodeId | None = None,
        deadline: float | None = None,
    ) -> NodeId:
        """Create folder ``name`` under ``parent`` unless it already exists.

        A conflict answer means the folder exists (possibly created
        concurrently); its id is taken from the conflict body.

        Returns:
            The id of the created or existing folder.
        """
        parent = parent if parent is not None else self._root_id()
        existing = self.find_child(parent, name, deadline)
        if existing is not None:
            return existing

        request = (
            RestRequest.post(self._endpoint(deadline).metadata_url)
            .url_push("nodes")
            .body_json({FIELD_NAME: name, FIELD_KIND: KIND_FOLDER, FIELD_PARENTS: [parent]})
        )
        status_code, body = self._orchestrator.execute(request, True, deadline)

        if status_code == HTTP_CREATED:
            folder = _node_id(decode_server_object(body), body)
            logger.info("[mkdir] folder created; parent:%s;name:%s;id:%s", parent, name, folder)
        elif status_code == HTTP_CONFLICT:
            info = decode_server_object(body, FIELD_INFO)[FIELD_INFO]
            if not isinstance(info, dict) or FIELD_NODE_ID not in info:
                raise ResponseBadJsonError("conflict response has no info.nodeId", body)
            folder = NodeId(str(info[FIELD_NODE_ID]))
            logger.info(
                "[mkdir] folder already exists; parent:%s;name:%s;id:%s", parent, name, folder
            )
        else:
            raise UnknownServerError(status_code, body)

        self._cache.put(parent, name, folder)
        return folder

    def ensure_path(
        self,
        path: PathLike,
        start: NodeId | None = None,
        deadline: float | None = None,
    ) -> NodeId:
        """Like ``resolve``, but create every missing folder along the way.

        Returns:
            The id of the last folder in the path.
        """
        components = split_path(path)
        _check_components(components)

        current = start if start is not None else self._root_id()
        for component in components:
            if component.kind is ComponentKind.ROOT:
                current = self._root_id()
            elif component.kind is ComponentKind.NAME:
                current = self.mkdir(component.name, current, deadline)
        return current


def _node_id(node: object, body: bytes) -> NodeId:
    if not isinstance(node, dict) or FIELD_ID not in node:
        raise ResponseBadJsonError("node has no id", body)
    return NodeId(str(node[FIELD_ID]))
