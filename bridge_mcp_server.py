from __future__ import annotations

from mcp.server.fastmcp import FastMCP

from form_meeting_bridge import ReservationYamlRepository, load_settings

mcp = FastMCP(
    "Meeting Bridge MCP Server",
    instructions="Expose stored form reservations and routing configuration from the form_meeting_bridge project.",
    json_response=True,
)

SETTINGS = load_settings()
REPOSITORY = ReservationYamlRepository(SETTINGS.data_dir)


@mcp.resource("bridge://form-routes")
async def list_form_routes() -> list[dict[str, str]]:
    """List form names with the meeting room and area they book."""
    return [{"form_name": route.form_name, "room_id": route.room_id, "area": route.area} for route in SETTINGS.form_routes]


@mcp.resource("bridge://operators")
async def list_operators() -> list[dict[str, str]]:
    """List configured operators; the first one is the default."""
    return [operator.to_dict() for operator in SETTINGS.operators]


@mcp.tool()
def list_reservations(token: str | None = None, active_only: bool = False) -> list[dict]:
    """Return stored reservation records, optionally filtered by form token."""
    records = REPOSITORY.list_records(token)
    return [record.to_dict() for record in records if not active_only or record.is_active]


def main() -> None:
    mcp.run()


if __name__ == "__main__":
    main()
