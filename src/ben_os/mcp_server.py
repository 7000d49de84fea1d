"""
FastMCP Server Implementation for Ben OS

Provides the FastMCP server wrapper and factory that register the ten Ben OS
agent tools. Supports stdio, SSE and HTTP transports with async lifecycle
management.
"""

import logging
from typing import Optional, Dict, Any
from contextlib import asynccontextmanager

from fastmcp import FastMCP

from .database import BenOSDatabase
from .api import ConnectionManager
from .tools import AVAILABLE_TOOLS, create_tool_instance

# Configure logging for MCP server operations
logger = logging.getLogger(__name__)

SUPPORTED_TRANSPORTS = ("stdio", "sse", "http")
DEFAULT_PATHS = {"sse": "/sse", "http": "/mcp"}


class BenOSMCPServer:
    """
    FastMCP server wrapper with lifecycle management and tool registration.

    Tool instances share the database and WebSocket manager handed to the
    wrapper; each `@mcp.tool` closure forwards its arguments to one tool.
    """

    def __init__(
        self,
        database: BenOSDatabase,
        websocket_manager: ConnectionManager,
        server_name: str = "ben-os-mcp",
        server_version: str = "1.0.0"
    ):
        """
        Initialize MCP server with database and WebSocket dependencies.

        Args:
            database: BenOSDatabase instance for data operations
            websocket_manager: ConnectionManager for real-time broadcasting
            server_name: Name identifier for the MCP server
            server_version: Version string for server identification
        """
        self.database = database
        self.websocket_manager = websocket_manager
        self.server_name = server_name
        self.server_version = server_version
        self.mcp_server: Optional[FastMCP] = None

        self._server_instructions = (
            f"{server_name} gives AI agents access to the Ben OS workspace: list projects, "
            "read boards and PRDs, gather task context, create, update and move tasks, "
            "search tasks, record activity and generate reports."
        )

    async def _create_server(self) -> FastMCP:
        """
        Create and configure the FastMCP instance with all tools registered.

        Returns:
            Configured FastMCP server instance

        Raises:
            RuntimeError: If the server cannot be created
        """
        try:
            mcp = FastMCP(
                name=self.server_name,
                version=self.server_version,
                instructions=self._server_instructions,
            )

            def tool(name: str):
                return create_tool_instance(name, self.database, self.websocket_manager)

            list_projects_tool = tool("list_projects")

            @mcp.tool
            async def list_projects(area_id: Optional[str] = None, status: Optional[str] = None) -> str:
                """
                List all projects with their status and progress.

                Args:
                    area_id: Only projects of this area
                    status: active, paused, completed or archived
                """
                return await list_projects_tool.apply(area_id=area_id, status=status)

            get_board_tool = tool("get_board")

            @mcp.tool
            async def get_board(board_id: str) -> str:
                """
                Get a Kanban board with its column definitions and all of its tasks.

                Args:
                    board_id: The ID of the board to retrieve
                """
                return await get_board_tool.apply(board_id=board_id)

            get_prd_tool = tool("get_prd")

            @mcp.tool
            async def get_prd(prd_id: str) -> str:
                """
                Get a Product Requirements Document with its sections, linked tasks
                and completion progress.

                Args:
                    prd_id: The ID of the PRD to retrieve
                """
                return await get_prd_tool.apply(prd_id=prd_id)

            create_task_tool = tool("create_task")

            @mcp.tool
            async def create_task(
                board_id: str,
                title: str,
                description: Optional[str] = None,
                priority: Optional[str] = None,
                column_id: Optional[str] = None,
                milestone_id: Optional[str] = None,
                story_points: Optional[int] = None,
                ai_context: Optional[Dict[str, Any]] = None,
                due_date: Optional[str] = None,
                prd_id: Optional[str] = None,
                agent_id: Optional[str] = None,
            ) -> str:
                """
                Create a new task on a board.

                Args:
                    board_id: The board to create the task on
                    title: Task title
                    description: Optional description
                    priority: low, medium, high or critical
                    column_id: Target column, defaults to the board's first column
                    milestone_id: Optional milestone
                    story_points: Estimate between 0 and 21
                    ai_context: Free-form context for agents
                    due_date: Due date in ISO format
                    prd_id: Optional PRD to link
                    agent_id: Acting agent, recorded in the activity log
                """
                return await create_task_tool.apply(
                    board_id=board_id,
                    title=title,
                    description=description,
                    priority=priority,
                    column_id=column_id,
                    milestone_id=milestone_id,
                    story_points=story_points,
                    ai_context=ai_context,
                    due_date=due_date,
                    prd_id=prd_id,
                    agent_id=agent_id,
                )

            update_task_tool = tool("update_task")

            @mcp.tool
            async def update_task(
                task_id: str,
                title: Optional[str] = None,
                description: Optional[str] = None,
                priority: Optional[str] = None,
                status: Optional[str] = None,
                column_id: Optional[str] = None,
                milestone_id: Optional[str] = None,
                story_points: Optional[int] = None,
                ai_context: Optional[Dict[str, Any]] = None,
                due_date: Optional[str] = None,
                prd_id: Optional[str] = None,
                assigned_agent_id: Optional[str] = None,
                agent_id: Optional[str] = None,
            ) -> str:
                """
                Update fields of an existing task. Omitted fields stay unchanged.

                Args:
                    task_id: The task to update
                    status: backlog, todo, in_progress, review or done
                    agent_id: Acting agent, recorded in the activity log
                """
                return await update_task_tool.apply(
                    task_id=task_id,
                    agent_id=agent_id,
                    title=title,
                    description=description,
                    priority=priority,
                    status=status,
                    column_id=column_id,
                    milestone_id=milestone_id,
                    story_points=story_points,
                    ai_context=ai_context,
                    due_date=due_date,
                    prd_id=prd_id,
                    assigned_agent_id=assigned_agent_id,
                )

            move_task_tool = tool("move_task")

            @mcp.tool
            async def move_task(
                task_id: str,
                column_id: Optional[str] = None,
                board_id: Optional[str] = None,
                position: Optional[int] = None,
                agent_id: Optional[str] = None,
            ) -> str:
                """
                Move a task to a different column and/or board.

                Args:
                    task_id: The task to move
                    column_id: Target column
                    board_id: Target board, for moves between boards
                    position: Slot in the target column, defaults to the end
                    agent_id: Acting agent, recorded in the activity log
                """
                return await move_task_tool.apply(
                    task_id=task_id, column_id=column_id, board_id=board_id,
                    position=position, agent_id=agent_id,
                )

            get_context_tool = tool("get_context")

            @mcp.tool
            async def get_context(task_id: str) -> str:
                """
                Get context for a task: project, board, milestone, related tasks,
                subtasks and linked PRD.

                Args:
                    task_id: The task to get context for
                """
                return await get_context_tool.apply(task_id=task_id)

            log_activity_tool = tool("log_activity")

            @mcp.tool
            async def log_activity(
                entity_type: str,
                entity_id: str,
                action: str,
                payload: Optional[Dict[str, Any]] = None,
                agent_id: Optional[str] = None,
            ) -> str:
                """
                Record an agent action such as an analysis, review or decision.

                Args:
                    entity_type: areas, projects, milestones, tasks, subtasks, boards,
                        prds, agents or reports
                    entity_id: The ID of the entity
                    action: The action performed
                    payload: Additional data about the action
                    agent_id: The agent performing the action
                """
                return await log_activity_tool.apply(
                    entity_type=entity_type, entity_id=entity_id, action=action,
                    payload=payload, agent_id=agent_id,
                )

            search_tasks_tool = tool("search_tasks")

            @mcp.tool
            async def search_tasks(
                query: str,
                status: Optional[str] = None,
                priority: Optional[str] = None,
                board_id: Optional[str] = None,
                project_id: Optional[str] = None,
                limit: Optional[int] = None,
            ) -> str:
                """
                Search tasks by keyword across titles, descriptions and AI context.

                Args:
                    query: Search words
                    limit: Maximum results, 20 by default
                """
                return await search_tasks_tool.apply(
                    query=query, status=status, priority=priority,
                    board_id=board_id, project_id=project_id, limit=limit,
                )

            generate_report_tool = tool("generate_report")

            @mcp.tool
            async def generate_report(type: str, date: Optional[str] = None) -> str:
                """
                Generate and save a daily, weekly or monthly report.

                Args:
                    type: daily, weekly or monthly
                    date: Reference date (YYYY-MM-DD), today when omitted
                """
                return await generate_report_tool.apply(type=type, date=date)

            logger.info(f"FastMCP server '{self.server_name}' created with {len(AVAILABLE_TOOLS)} registered tools")
            return mcp

        except Exception as e:
            logger.error(f"Failed to create FastMCP server: {e}")
            raise RuntimeError(f"MCP server creation failed: {e}") from e

    @staticmethod
    def _transport_kwargs(transport: str, host: str, port: int, kwargs: Dict[str, Any]) -> Dict[str, Any]:
        if transport not in SUPPORTED_TRANSPORTS:
            raise ValueError(f"Unsupported transport mode: {transport}. Supported: {', '.join(SUPPORTED_TRANSPORTS)}")
        if transport == "stdio":
            return {}
        kwargs.setdefault("path", DEFAULT_PATHS[transport])
        return {"host": host, "port": port, **kwargs}

    async def start_server(
        self,
        transport: str = "stdio",
        host: str = "127.0.0.1",
        port: int = 8001,
        **kwargs
    ) -> None:
        """
        Start the FastMCP server on the current event loop.

        Args:
            transport: 'stdio', 'sse' or 'http'
            host: Host address for SSE/HTTP transports
            port: Port number for SSE/HTTP transports
            **kwargs: Additional transport-specific configuration

        Raises:
            RuntimeError: If the server fails to start
        """
        try:
            transport = transport.lower()
            transport_kwargs = self._transport_kwargs(transport, host, port, kwargs)
            if not self.mcp_server:
                self.mcp_server = await self._create_server()

            logger.info(f"Starting FastMCP server with {transport} transport")
            await self.mcp_server.run_async(transport=transport, **transport_kwargs)

        except Exception as e:
            logger.error(f"Failed to start FastMCP server with {transport} transport: {e}")
            raise RuntimeError(f"MCP server startup failed: {e}") from e

    def start_server_sync(self, transport: str = "stdio", host: str = "127.0.0.1", port: int = 8001, **kwargs):
        """
        Start the MCP server and let FastMCP own the event loop.

        The server is built with anyio.run before FastMCP starts its own loop.
        """
        transport = transport.lower()
        transport_kwargs = self._transport_kwargs(transport, host, port, kwargs)
        if not self.mcp_server:
            import anyio
            self.mcp_server = anyio.run(self._create_server)

        self.mcp_server.run(transport=transport, **transport_kwargs)

    @asynccontextmanager
    async def lifecycle_manager(self):
        """
        Async context manager that builds the server on entry and logs the
        lifecycle boundaries.
        """
        try:
            if not self.mcp_server:
                self.mcp_server = await self._create_server()

            logger.info(f"FastMCP server lifecycle started for '{self.server_name}'")
            yield self.mcp_server

        except Exception as e:
            logger.error(f"FastMCP server lifecycle error: {e}")
            raise
        finally:
            logger.info(f"FastMCP server lifecycle ended for '{self.server_name}'")

    def get_server_info(self) -> Dict[str, Any]:
        """
        Server metadata: name, version, instructions, registered tools and
        whether the FastMCP instance exists yet.
        """
        return {
            "name": self.server_name,
            "version": self.server_version,
            "instructions": self._server_instructions,
            "registered_tools": list(AVAILABLE_TOOLS.keys()),
            "server_created": self.mcp_server is not None,
        }


def create_mcp_server(
    database: BenOSDatabase,
    websocket_manager: ConnectionManager,
    server_name: str = "ben-os-mcp",
    server_version: str = "1.0.0"
) -> BenOSMCPServer:
    """
    Factory function to create a configured BenOSMCPServer.

    Args:
        database: BenOSDatabase instance for data operations
        websocket_manager: ConnectionManager for real-time broadcasting
        server_name: Name identifier for the MCP server
        server_version: Version string for server identification

    Returns:
        BenOSMCPServer ready for startup
    """
    return BenOSMCPServer(
        database=database,
        websocket_manager=websocket_manager,
        server_name=server_name,
        server_version=server_version
    )
