"""Drive client — node operations on top of the session, retry and cache layers."""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from typing import TYPE_CHECKING

from cloud_drive.drive.models import (
    FIELD_CONTENT_PROPERTIES,
    FIELD_DATA,
    FIELD_ID,
    FIELD_KIND,
    FIELD_MD5,
    FIELD_NAME,
    FIELD_NEXT_TOKEN,
    FIELD_PARENTS,
    KIND_FILE,
    KIND_FOLDER,
    NodeId,
)
from cloud_drive.drive.resolver import HTTP_CONFLICT, HTTP_CREATED, HTTP_OK, PathResolver
from cloud_drive.errors import (
    DriveError,
    IntegrityError,
    NodeExistsError,
    ResponseBadJsonError,
    UnknownServerError,
)
from cloud_drive.session.interactive import ConsoleInteractiveAuth
from cloud_drive.session.manager import SessionManager, session_manager_from_config
from cloud_drive.storage.node_cache import NodeCache, node_cache_from_config
from cloud_drive.storage.profile import profile_store_from_config
from cloud_drive.transport.rest import (
    CONTENT_TYPE_JSON,
    CONTENT_TYPE_OCTET_STREAM,
    MultipartField,
    RestRequest,
    UrllibTransport,
    decode_server_object,
)
from cloud_drive.transport.retry import RetryOrchestrator

if TYPE_CHECKING:
    from cloud_drive.config import AppConfig
    from cloud_drive.drive.paths import PathLike
    from cloud_drive.session.interactive import InteractiveAuth
    from cloud_drive.session.models import Endpoint

logger = logging.getLogger(__name__)

ROOT_FOLDER_FILTER = f"{FIELD_KIND}:{KIND_FOLDER} AND isRoot:true"


class DriveClient:
    """Authenticated client for one drive account.

    Every call goes through the retry orchestrator, and the endpoint is
    re-fetched whenever it has gone stale. Ids learned from successful
    lookups, folder creations and uploads are cached; nothing is cached
    for a failed operation.
    """

    def __init__(
        self,
        session: SessionManager,
        orchestrator: RetryOrchestrator,
        cache: NodeCache,
    ) -> None:
        """Initialise the client.

        Args:
            session: Session manager owning credentials and the endpoint.
            orchestrator: Retry orchestrator bound to ``session``.
            cache: Node cache shared by path resolution and creations.
        """
        self._session = session
        self._orchestrator = orchestrator
        self._cache = cache
        self._root_id: NodeId | None = None
        self._root_lock = threading.Lock()
        self._resolver = PathResolver(
            cache=cache,
            orchestrator=orchestrator,
            endpoint=self._endpoint,
            root_id=lambda: self.root_id,
        )

    def _endpoint(self, deadline: float | None = None) -> Endpoint:
        return self._session.ensure_endpoint_fresh(deadline)

    def connect(self) -> DriveClient:
        """Authorize if needed, refresh the endpoint and resolve the root folder."""
        self._session.ensure_authorized()
        self._endpoint()
        _ = self.root_id
        return self

    def close(self) -> None:
        """Release the node cache connection pool."""
        self._cache.close()

    # ------------------------------------------------------------------
    # Session access
    # ------------------------------------------------------------------

    def bearer_token(self) -> str | None:
        """Return the current access token for requests built elsewhere."""
        return self._session.current_token()

    def force_reauthenticate(self) -> None:
        """Renew the access token now."""
        self._session.invalidate()
        self._session.refresh(stale_token=None)

    def execute_with_retry(
        self,
        request: RestRequest,
        requires_auth: bool,
        deadline: float | None = None,
    ) -> tuple[int, bytes]:
        """Run ``request`` through the retry orchestrator."""
        return self._orchestrator.execute(request, requires_auth, deadline)

    # ------------------------------------------------------------------
    # Path resolution
    # ------------------------------------------------------------------

    @property
    def root_id(self) -> NodeId:
        """Id of the drive's root folder, looked up on first use."""
        with self._root_lock:
            if self._root_id is None:
                self._root_id = self._find_root()
            return self._root_id

    def _find_root(self) -> NodeId:
        request = (
            RestRequest.get(self._endpoint().metadata_url)
            .url_push("nodes")
            .url_query([("filters", ROOT_FOLDER_FILTER)])
        )
        status_code, body = self._orchestrator.execute(request, True)
        if status_code != HTTP_OK:
            raise UnknownServerError(status_code, body)
        nodes = decode_server_object(body, FIELD_DATA)[FIELD_DATA]
        if not isinstance(nodes, list) or not nodes or FIELD_ID not in nodes[0]:
            raise UnknownServerError(status_code, body)
        root = NodeId(str(nodes[0][FIELD_ID]))
        logger.info("[_find_root] root folder resolved; id:%s", root)
        return root

    def find_child(
        self,
        parent: NodeId,
        name: str,
        deadline: float | None = None,
    ) -> NodeId | None:
        """Return the id of ``name`` directly under ``parent``, or None if absent.

        Args:
            parent: Folder to search.
            name: Exact child name.
            deadline: Optional ``time.monotonic()`` bound for the lookup.

        Raises:
            UnknownServerError: The lookup answered with an unexpected status.
        """
        return self._resolver.find_child(parent, name, deadline)

    def resolve_path(
        self,
        path: PathLike,
        start: NodeId | None = None,
        deadline: float | None = None,
    ) -> NodeId | None:
        """Return the id at ``path``, or None if it does not exist."""
        return self._resolver.resolve(path, start, deadline)

    def ensure_path(
        self,
        path: PathLike,
        start: NodeId | None = None,
        deadline: float | None = None,
    ) -> NodeId:
        """Return the id of the folder at ``path``, creating missing folders."""
        return self._resolver.ensure_path(path, start, deadline)

    def mkdir(
        self,
        name: str,
        parent: NodeId | None = None,
        deadline: float | None = None,
    ) -> NodeId:
        """Create folder ``name`` under ``parent`` (the root by default).

        Returns:
            The id of the new folder, or of the folder already carrying that name.

        Raises:
            UnknownServerError: The service answered with an unexpected status.
        """
        return self._resolver.mkdir(name, parent, deadline)

    # ------------------------------------------------------------------
    # Node operations
    # ------------------------------------------------------------------

    def upload(
        self,
        name: str,
        data: bytes,
        parent: NodeId | None = None,
        content_type: str | None = None,
        deadline: float | None = None,
    ) -> NodeId:
        """Upload ``data`` as file ``name`` under ``parent`` (the root by default).

        The server's MD5 of the stored content is compared with ours; on a
        mismatch the new node is moved to trash before raising.

        Returns:
            The id of the new file.

        Raises:
            NodeExistsError: A node called ``name`` already exists under ``parent``.
            IntegrityError: The stored content does not match ``data``.
        """
        parent = parent if parent is not None else self.root_id
        expected_md5 = hashlib.md5(data).hexdigest()
        metadata = {FIELD_NAME: name, FIELD_KIND: KIND_FILE, FIELD_PARENTS: [parent]}

        request = (
            RestRequest.post(self._endpoint(deadline).content_url)
            .url_push("nodes")
            .url_query([("suppress", "deduplication")])
            .multipart(
                [
                    MultipartField(
                        "metadata",
                        json.dumps(metadata).encode("utf-8"),
                        content_type=CONTENT_TYPE_JSON,
                    ),
                    MultipartField(
                        "content",
                        data,
                        filename=name,
                        content_type=content_type or CONTENT_TYPE_OCTET_STREAM,
                    ),
                ]
            )
        )
        status_code, body = self._orchestrator.execute(request, True, deadline)

        if status_code == HTTP_CONFLICT:
            raise NodeExistsError(f"Node exists: {name!r} under {parent}")
        if status_code != HTTP_CREATED:
            raise UnknownServerError(status_code, body)

        payload = decode_server_object(body, FIELD_ID, FIELD_CONTENT_PROPERTIES)
        node = NodeId(str(payload[FIELD_ID]))
        properties = payload[FIELD_CONTENT_PROPERTIES]
        if not isinstance(properties, dict) or FIELD_MD5 not in properties:
            raise ResponseBadJsonError("upload response has no contentProperties.md5", body)
        actual_md5 = str(properties[FIELD_MD5]).lower()

        if actual_md5 != expected_md5:
            logger.error(
                "[upload] checksum mismatch, trashing node; id:%s;expected:%s;actual:%s",
                node,
                expected_md5,
                actual_md5,
            )
            try:
                self.rm(node, deadline)
            except DriveError as exc:
                logger.error("[upload] could not trash corrupt node; id:%s;error:%s", node, exc)
                raise IntegrityError(node, expected_md5, actual_md5) from exc
            raise IntegrityError(node, expected_md5, actual_md5)

        self._cache.put(parent, name, node)
        logger.info(
            "[upload] upload completed; parent:%s;name:%s;id:%s;size:%d",
            parent,
            name,
            node,
            len(data),
        )
        return node

    def download(self, node: NodeId, deadline: float | None = None) -> bytes:
        """Return the content of file ``node``."""
        request = (
            RestRequest.get(self._endpoint(deadline).content_url)
            .url_push("nodes")
            .url_push(node)
            .url_push("content")
        )
        status_code, body = self._orchestrator.execute(request, True, deadline)
        if status_code != HTTP_OK:
            raise UnknownServerError(status_code, body)
        return body

    def ls(self, parent: NodeId, deadline: float | None = None) -> list[NodeId]:
        """Return the ids of every child of ``parent``, following pagination."""
        ids: list[NodeId] = []
        next_token: str | None = None

        while True:
            request = (
                RestRequest.get(self._endpoint(deadline).metadata_url)
                .url_push("nodes")
                .url_push(parent)
                .url_push("children")
            )
            if next_token is not None:
                request = request.url_query([("startToken", next_token)])
            status_code, body = self._orchestrator.execute(request, True, deadline)
            if status_code != HTTP_OK:
                raise UnknownServerError(status_code, body)

            payload = decode_server_object(body, FIELD_DATA)
            nodes = payload[FIELD_DATA]
            if not isinstance(nodes, list):
                raise ResponseBadJsonError("data is not a list", body)
            for node in nodes:
                if not isinstance(node, dict) or FIELD_ID not in node:
                    raise ResponseBadJsonError("listed node has no id", body)
                ids.append(NodeId(str(node[FIELD_ID])))

            next_token = payload.get(FIELD_NEXT_TOKEN)
            if not next_token:
                break

        return ids

    def rm(self, node: NodeId, deadline: float | None = None) -> None:
        """Move ``node`` to the trash. Cached entries pointing at it are kept."""
        request = (
            RestRequest.put(self._endpoint(deadline).metadata_url)
            .url_push("trash")
            .url_push(node)
        )
        status_code, body = self._orchestrator.execute(request, True, deadline)
        if status_code != HTTP_OK:
            raise UnknownServerError(status_code, body)
        logger.info("[rm] node moved to trash; id:%s", node)


def drive_client_from_config(
    config: AppConfig,
    interactive: InteractiveAuth | None = None,
) -> DriveClient:
    """Construct a DriveClient from application configuration.

    Args:
        config: Application configuration instance.
        interactive: Capability for the authorization-code flow; defaults to
            the system browser and stdin.

    Returns:
        Configured, not yet connected, DriveClient instance.
    """
    orchestrator = RetryOrchestrator(
        UrllibTransport(timeout=config.request_timeout),
        max_retries=config.max_retries,
        backoff_unit_ms=config.backoff_unit_ms,
    )
    session = session_manager_from_config(
        config,
        store=profile_store_from_config(config),
        orchestrator=orchestrator,
        interactive=interactive or ConsoleInteractiveAuth(),
    )
    orchestrator.session = session
    return DriveClient(
        session=session,
        orchestrator=orchestrator,
        cache=node_cache_from_config(config),
    )
