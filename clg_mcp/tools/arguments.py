from typing import Any, Dict, List, Literal, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from clg_mcp.error_handling.exceptions import InvalidParamsError

DEFAULT_MAX_RESULTS = 20
MAX_RESULTS_CEILING = 50

ResourceType = Literal[
    'census', 'vital_records', 'military', 'immigration',
    'newspapers', 'cemeteries', 'church_records', 'all',
]


class ToolArguments(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra='ignore')


class TimePeriod(BaseModel):
    start: Optional[int] = None
    end: Optional[int] = None


class SearchResourcesArgs(ToolArguments):
    query: str = Field(..., min_length=1)
    location: Optional[str] = None
    time_period: Optional[TimePeriod] = Field(None, alias='timePeriod')
    resource_type: ResourceType = Field('all', alias='resourceType')
    max_results: int = Field(DEFAULT_MAX_RESULTS, alias='maxResults', ge=1)

    @field_validator('query')
    @classmethod
    def query_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("query cannot be blank")
        return v.strip()

    @field_validator('max_results')
    @classmethod
    def cap_max_results(cls, v: int) -> int:
        return min(v, MAX_RESULTS_CEILING)


class BrowseCategoriesArgs(ToolArguments):
    parent_category: Optional[str] = Field(None, alias='parentCategory')
    include_count: bool = Field(False, alias='includeCount')


class ResourceDetailsArgs(ToolArguments):
    resource_id: str = Field(..., alias='resourceId', min_length=1)
    include_related: bool = Field(False, alias='includeRelated')

    @field_validator('resource_id')
    @classmethod
    def resource_id_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Resource ID cannot be empty")
        return v.strip()


class FilterResourcesArgs(ToolArguments):
    categories: List[str] = Field(default_factory=list)
    locations: List[str] = Field(default_factory=list)
    languages: List[str] = Field(default_factory=list)
    free_only: bool = Field(False, alias='freeOnly')
    has_digital_records: bool = Field(False, alias='hasDigitalRecords')


class LocationResourcesArgs(ToolArguments):
    country: str = Field(..., min_length=1)
    state: Optional[str] = None
    county: Optional[str] = None
    city: Optional[str] = None

    @field_validator('country')
    @classmethod
    def country_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Country cannot be empty")
        return v.strip()


# Tool name -> argument model
TOOL_ARGUMENTS_MAP: Dict[str, Type[ToolArguments]] = {
    "search_genealogy_resources": SearchResourcesArgs,
    "browse_categories": BrowseCategoriesArgs,
    "get_resource_details": ResourceDetailsArgs,
    "filter_resources": FilterResourcesArgs,
    "get_location_resources": LocationResourcesArgs,
}


def validate_tool_arguments(tool_name: str, arguments: Optional[Any]) -> ToolArguments:
    """
    Validate the arguments of a tool invocation.

    Args:
        tool_name: The published tool name.
        arguments: The raw `arguments` value from the request (None means no arguments).

    Returns:
        The validated argument model instance.

    Raises:
        InvalidParamsError: If the arguments are not an object or fail validation.
        KeyError: If the tool has no argument model.
    """
    model_class = TOOL_ARGUMENTS_MAP[tool_name]
    if arguments is None:
        arguments = {}
    if not isinstance(arguments, dict):
        raise InvalidParamsError(f"Arguments for {tool_name} must be an object")
    try:
        return model_class.model_validate(arguments)
    except ValidationError as e:
        raise InvalidParamsError(
            f"Invalid arguments for {tool_name}",
            data={'errors': [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]},
        )
