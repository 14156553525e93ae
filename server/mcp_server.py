# docfeed MCP Server - JSON-RPC 2.0 over stdio
# Exposes document search and lookup to an external agent

import sys, json, asyncio, logging
from typing import Dict, Any, Optional, TextIO

from config.settings import MCPConfig
from indexer.search_index import DocumentIndex
from pipelines.errors import DocfeedError
from pipelines.models import Document

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"
DEFAULT_SEARCH_LIMIT = 10
MAX_SEARCH_LIMIT = 50

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603


class JSONRPCError(Exception):
    """Protocol-level failure returned as a JSON-RPC error object."""

    def __init__(self, code: int, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


def _text_result(text: str, is_error: bool = False) -> Dict[str, Any]:
    result: Dict[str, Any] = {"content": [{"type": "text", "text": text}]}
    if is_error:
        result["isError"] = True
    return result


def _document_payload(doc: Document) -> Dict[str, Any]:
    """Agent-facing document: everything except the embedding vector."""
    data = doc.to_dict()
    data.pop("embedding", None)
    return data


class MCPServer:
    def __init__(self, index: DocumentIndex, config: Optional[MCPConfig] = None):
        config = config or MCPConfig()
        self.index = index
        self.capabilities = {
            "tools": {
                "listChanged": False
            }
        }
        self.server_info = {
            "name": config.name,
            "version": config.version
        }
        self.session_initialized = False

    async def handle_initialize(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """Handle MCP initialize request"""
        client_info = params.get("clientInfo", {})
        logger.info(f"Initializing MCP session with client: {client_info.get('name', 'unknown')}")

        return {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": self.capabilities,
            "serverInfo": self.server_info
        }

    async def handle_initialized(self, params: Dict[str, Any]) -> None:
        """Handle MCP initialized notification"""
        self.session_initialized = True
        logger.info("MCP session initialized successfully")

    async def handle_tools_list(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """List available MCP tools"""
        return {
            "tools": [
                {
                    "name": "search_documents",
                    "description": "Search indexed documentation pages by query. Returns full page content in markdown format.",
                    "inputSchema": {
                        "type": "object",
                        "properties": {
                            "query": {
                                "type": "string",
                                "description": "Search query string"
                            },
                            "limit": {
                                "type": "integer",
                                "description": "Maximum number of results to return (default: 10)",
                                "default": DEFAULT_SEARCH_LIMIT,
                                "minimum": 1,
                                "maximum": MAX_SEARCH_LIMIT
                            }
                        },
                        "required": ["query"]
                    }
                },
                {
                    "name": "get_document",
                    "description": "Get a specific documentation page by ID",
                    "inputSchema": {
                        "type": "object",
                        "properties": {
                            "id": {
                                "type": "string",
                                "description": "Document ID to retrieve"
                            }
                        },
                        "required": ["id"]
                    }
                }
            ]
        }

    async def handle_tools_call(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """Execute MCP tool calls"""
        name = params.get("name")
        arguments = params.get("arguments") or {}
        if not isinstance(arguments, dict):
            raise JSONRPCError(INVALID_PARAMS, "arguments must be an object")

        if name == "search_documents":
            return await self._tool_search_documents(arguments)
        elif name == "get_document":
            return await self._tool_get_document(arguments)
        else:
            raise JSONRPCError(INVALID_PARAMS, f"Unknown tool: {name}")

    async def _tool_search_documents(self, args: Dict[str, Any]) -> Dict[str, Any]:
        """Lexical search tool implementation"""
        query = args.get("query")
        if not isinstance(query, str) or not query.strip():
            return _text_result("query parameter is required", is_error=True)

        try:
            limit = int(args.get("limit", DEFAULT_SEARCH_LIMIT))
        except (TypeError, ValueError):
            limit = DEFAULT_SEARCH_LIMIT
        limit = max(1, min(limit, MAX_SEARCH_LIMIT))

        try:
            docs = await self.index.search(query, limit)
        except DocfeedError as e:
            logger.error(f"search_documents failed: {e}")
            return _text_result(f"search failed: {e}", is_error=True)

        return _text_result(json.dumps([_document_payload(doc) for doc in docs]))

    async def _tool_get_document(self, args: Dict[str, Any]) -> Dict[str, Any]:
        """Document lookup tool implementation"""
        doc_id = args.get("id")
        if not isinstance(doc_id, str) or not doc_id:
            return _text_result("id parameter is required", is_error=True)

        try:
            doc = await self.index.get(doc_id)
        except DocfeedError as e:
            logger.error(f"get_document failed: {e}")
            return _text_result(f"get document failed: {e}", is_error=True)

        if doc is None:
            return _text_result(f"document not found: {doc_id}", is_error=True)

        return _text_result(json.dumps(_document_payload(doc)))

    async def handle_request(self, request_data: Any) -> Optional[Dict[str, Any]]:
        """Dispatch one JSON-RPC 2.0 request"""
        request_id = request_data.get("id") if isinstance(request_data, dict) else None
        try:
            # Validate JSON-RPC structure
            if not isinstance(request_data, dict) or request_data.get("jsonrpc") != "2.0":
                raise JSONRPCError(INVALID_REQUEST, "Invalid JSON-RPC version")

            method = request_data.get("method")
            params = request_data.get("params") or {}
            if not method:
                raise JSONRPCError(INVALID_REQUEST, "Missing method")
            if not isinstance(params, dict):
                raise JSONRPCError(INVALID_PARAMS, "params must be an object")

            if method == "initialize":
                result = await self.handle_initialize(params)
            elif method in ("initialized", "notifications/initialized"):
                await self.handle_initialized(params)
                return None  # Notification, no response
            elif method == "ping":
                result = {}
            elif method == "tools/list":
                result = await self.handle_tools_list(params)
            elif method == "tools/call":
                result = await self.handle_tools_call(params)
            else:
                raise JSONRPCError(METHOD_NOT_FOUND, f"Unknown method: {method}")

            return {
                "jsonrpc": "2.0",
                "id": request_id,
                "result": result
            }

        except JSONRPCError as e:
            logger.warning(f"Rejected request: {e.message}")
            return self._error(request_id, e.code, e.message)
        except Exception as e:
            logger.error(f"Error handling request: {e}")
            return self._error(request_id, INTERNAL_ERROR, str(e))

    @staticmethod
    def _error(request_id: Any, code: int, message: str) -> Dict[str, Any]:
        return {
            "jsonrpc": "2.0",
            "id": request_id,
            "error": {
                "code": code,
                "message": message
            }
        }

    async def serve_stdio(self, stdin: TextIO = sys.stdin, stdout: TextIO = sys.stdout) -> None:
        """Read one JSON request per line until EOF, answering on ``stdout``."""
        loop = asyncio.get_event_loop()
        logger.info("Starting MCP server in stdio mode")

        while True:
            line = await loop.run_in_executor(None, stdin.readline)
            if not line:
                break
            line = line.strip()
            if not line:
                continue

            try:
                request_data = json.loads(line)
            except json.JSONDecodeError as e:
                response = self._error(None, PARSE_ERROR, f"Parse error: {e}")
            else:
                response = await self.handle_request(request_data)

            if response:  # Don't send response for notifications
                stdout.write(json.dumps(response) + "\n")
                stdout.flush()

        logger.info("MCP stdio input closed, shutting down")
