"""
Protocol constants for the Map Bot service.

These values are part of the client contract and are stable across
environments. For operational parameters (timeouts, model names, history
window overrides) see config.py.
"""

API_TITLE = "Map Bot API"
API_VERSION = "1.0.0"

# --- Retention window (messages kept per session) ---
DEFAULT_HISTORY_WINDOW = 20

# --- Status indicator texts sent as {"type": "thinking"} ---
STATUS_THINKING = "Thinking..."
STATUS_GENERATING = "Generating response..."


def tool_status(tool_name: str) -> str:
    """Status text shown while a tool runs, e.g. 'Using search places...'."""
    return f"Using {tool_name.replace('_', ' ')}..."


# --- Client-facing messages ---
GENERIC_ERROR_MESSAGE = (
    "Sorry, I encountered an error processing your request. Please try again."
)

GREETING_MESSAGE = (
    "👋 Hello! I'm your Map assistant powered by OpenStreetMap. I can help you:\n\n"
    "• **Search for places** - restaurants, cafes, hotels, etc.\n"
    "• **Get directions** - driving, walking, or cycling\n"
    "• **Find nearby places** - search by location and type\n"
    "• **Geocode addresses** - convert addresses to coordinates\n\n"
    "Try asking me something like:\n"
    '- "Find cafes near Times Square"\n'
    '- "How do I get from Central Park to Brooklyn Bridge?"\n'
    '- "What restaurants are near latitude 40.7128, longitude -74.0060?"'
)

# --- MCP client identity ---
MCP_CLIENT_NAME = "map-bot-backend"
MCP_PROTOCOL_VERSION = "2024-11-05"
