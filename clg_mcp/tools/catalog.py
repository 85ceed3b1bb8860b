"""
Published tool catalog for the CLG MCP Server.
This module defines the immutable tool descriptors returned by the catalog listing method.
"""

import logging
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

from clg_mcp.error_handling.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


class ToolName(str, Enum):
    """Closed set of tools the server publishes."""
    SEARCH_RESOURCES = 'search_genealogy_resources'
    BROWSE_CATEGORIES = 'browse_categories'
    GET_RESOURCE_DETAILS = 'get_resource_details'
    FILTER_RESOURCES = 'filter_resources'
    GET_LOCATION_RESOURCES = 'get_location_resources'


class ToolDescriptor(BaseModel):
    """A published tool: unique name, human description and JSON schema of its arguments."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: ToolName
    description: str
    input_schema: Dict[str, Any] = Field(..., alias='inputSchema')

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name.value,
            'description': self.description,
            'inputSchema': self.input_schema,
        }


DEFAULT_TOOLS = (
    ToolDescriptor(
        name=ToolName.SEARCH_RESOURCES,
        description="Search Cyndi's List for genealogy resources by ancestor names, locations, or keywords",
        inputSchema={
            'type': 'object',
            'properties': {
                'query': {'type': 'string', 'description': 'Search query (names, locations, keywords)'},
                'location': {'type': 'string', 'description': 'Geographic location filter (optional)'},
                'timePeriod': {
                    'type': 'object',
                    'properties': {
                        'start': {'type': 'number', 'description': 'Start year'},
                        'end': {'type': 'number', 'description': 'End year'},
                    },
                },
                'resourceType': {
                    'type': 'string',
                    'enum': ['census', 'vital_records', 'military', 'immigration',
                             'newspapers', 'cemeteries', 'church_records', 'all'],
                    'description': 'Type of genealogy resource',
                },
                'maxResults': {'type': 'number', 'description': 'Maximum results to return (default: 20, max: 50)'},
            },
            'required': ['query'],
        },
    ),
    ToolDescriptor(
        name=ToolName.BROWSE_CATEGORIES,
        description="Browse genealogy resource categories on Cyndi's List",
        inputSchema={
            'type': 'object',
            'properties': {
                'parentCategory': {'type': 'string', 'description': 'Parent category ID (optional, null for top-level)'},
                'includeCount': {'type': 'boolean', 'description': 'Include resource count per category'},
            },
        },
    ),
    ToolDescriptor(
        name=ToolName.GET_RESOURCE_DETAILS,
        description='Get detailed information about a specific genealogy resource',
        inputSchema={
            'type': 'object',
            'properties': {
                'resourceId': {'type': 'string', 'description': 'Unique resource identifier'},
                'includeRelated': {'type': 'boolean', 'description': 'Include related resources'},
            },
            'required': ['resourceId'],
        },
    ),
    ToolDescriptor(
        name=ToolName.FILTER_RESOURCES,
        description='Filter genealogy resources by multiple criteria',
        inputSchema={
            'type': 'object',
            'properties': {
                'categories': {'type': 'array', 'items': {'type': 'string'}, 'description': 'Category IDs to filter by'},
                'locations': {'type': 'array', 'items': {'type': 'string'}, 'description': 'Geographic locations'},
                'languages': {'type': 'array', 'items': {'type': 'string'}, 'description': 'Resource languages'},
                'freeOnly': {'type': 'boolean', 'description': 'Only show free resources'},
                'hasDigitalRecords': {'type': 'boolean', 'description': 'Only show resources with digital records'},
            },
        },
    ),
    ToolDescriptor(
        name=ToolName.GET_LOCATION_RESOURCES,
        description='Get genealogy resources for a specific location',
        inputSchema={
            'type': 'object',
            'properties': {
                'country': {'type': 'string', 'description': 'Country name'},
                'state': {'type': 'string', 'description': 'State/Province name (optional)'},
                'county': {'type': 'string', 'description': 'County name (optional)'},
                'city': {'type': 'string', 'description': 'City name (optional)'},
            },
            'required': ['country'],
        },
    ),
)


class ToolCatalog:
    """Static name -> descriptor table, built once at startup."""

    def __init__(self, descriptors: Iterable[ToolDescriptor] = DEFAULT_TOOLS):
        table: Dict[str, ToolDescriptor] = {}
        for descriptor in descriptors:
            if descriptor.name.value in table:
                raise ConfigurationError(f"Duplicate tool name: {descriptor.name.value}")
            table[descriptor.name.value] = descriptor
        self._table: Mapping[str, ToolDescriptor] = MappingProxyType(table)
        self._listing: List[Dict[str, Any]] = [d.to_dict() for d in table.values()]
        logger.info(f"Tool catalog built with {len(table)} tools")

    def __len__(self) -> int:
        return len(self._table)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name in self._table

    def get(self, name: Any) -> Optional[ToolDescriptor]:
        if not isinstance(name, str):
            return None
        return self._table.get(name)

    def names(self) -> List[str]:
        return list(self._table)

    def listing(self) -> List[Dict[str, Any]]:
        """The published catalog, as returned by the listing method."""
        return [dict(entry) for entry in self._listing]
