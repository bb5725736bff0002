"""
Map side-action models.

A tool result may embed a ``mapAction`` object telling the client how to
update its map. The ``type`` field is the tag; each tag has its own payload.
Positions are ``[lat, lng]`` pairs, the order Leaflet expects.
"""

from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

Position = tuple[float, float]
Bounds = tuple[Position, Position]


class _MapActionBase(BaseModel):
    """Shared config: camelCase on the wire, extra fields tolerated."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    def to_wire(self) -> dict:
        """Serialize to the client JSON shape (camelCase keys, no nulls)."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class Marker(BaseModel):
    """A single map marker."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    position: Position
    title: str
    info: str | None = Field(default=None, description="Popup detail text")


class ShowMarkersAction(_MapActionBase):
    """Place markers on the map, optionally re-centering or fitting them."""

    type: Literal["SHOW_MARKERS"] = "SHOW_MARKERS"
    markers: list[Marker]
    center: Position | None = None
    zoom: int | float | None = None
    fit_bounds: bool | None = Field(default=None, alias="fitBounds")
    bounds: Bounds | None = None


class ShowRouteAction(_MapActionBase):
    """Draw a route polyline."""

    type: Literal["SHOW_ROUTE"] = "SHOW_ROUTE"
    route: list[Position]
    bounds: Bounds | None = None


class CenterAction(_MapActionBase):
    """Move the map viewport."""

    type: Literal["CENTER"] = "CENTER"
    center: Position
    zoom: int | float | None = None


SideAction = Annotated[
    Union[ShowMarkersAction, ShowRouteAction, CenterAction],
    Field(discriminator="type"),
]

KNOWN_ACTION_TYPES: frozenset[str] = frozenset({"SHOW_MARKERS", "SHOW_ROUTE", "CENTER"})

side_action_adapter = TypeAdapter(SideAction)
