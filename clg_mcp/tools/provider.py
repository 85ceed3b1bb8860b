"""
Resource Providers for the CLG MCP Server.

A provider executes a published tool: `invoke(tool_name, arguments) -> result`.
It may perform arbitrary I/O but never touches dispatcher or session state.
Failures are raised, never reported as an empty success.
"""

import html
import logging
import re
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional
from urllib.parse import quote, urlencode, urljoin, urlparse

import httpx

from clg_mcp.error_handling.exceptions import NetworkError, ResourceNotFoundError, UnknownToolError
from clg_mcp.performance.caching import CachedResourceProvider
from clg_mcp.tools.arguments import (
    BrowseCategoriesArgs,
    FilterResourcesArgs,
    LocationResourcesArgs,
    ResourceDetailsArgs,
    SearchResourcesArgs,
    ToolArguments,
    validate_tool_arguments,
)
from clg_mcp.tools.catalog import ToolName

logger = logging.getLogger(__name__)


class ResourceProvider(ABC):
    """
    Base class for providers.

    Subclasses implement one coroutine per tool; `invoke` validates the raw
    arguments with the tool's argument model and routes to it.
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        self.config = config or {}
        self.max_search_results = self.config.get('max_search_results', 50)
        self._handlers: Dict[ToolName, Callable[[Any], Awaitable[Any]]] = {
            ToolName.SEARCH_RESOURCES: self.search_resources,
            ToolName.BROWSE_CATEGORIES: self.browse_categories,
            ToolName.GET_RESOURCE_DETAILS: self.get_resource_details,
            ToolName.FILTER_RESOURCES: self.filter_resources,
            ToolName.GET_LOCATION_RESOURCES: self.get_location_resources,
        }

    async def invoke(self, tool_name: str, arguments: Any) -> Any:
        """
        Execute one tool.

        Raises:
            UnknownToolError: If the provider has no handler for `tool_name`
            InvalidParamsError: If `arguments` fail validation
            CLGMCPError subclasses or any other exception raised by the tool itself
        """
        try:
            tool = ToolName(tool_name)
        except ValueError:
            raise UnknownToolError(tool_name)
        args = validate_tool_arguments(tool.value, arguments)
        return await self._handlers[tool](args)

    @abstractmethod
    async def search_resources(self, args: SearchResourcesArgs) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def browse_categories(self, args: BrowseCategoriesArgs) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def get_resource_details(self, args: ResourceDetailsArgs) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def filter_resources(self, args: FilterResourcesArgs) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def get_location_resources(self, args: LocationResourcesArgs) -> Dict[str, Any]:
        pass

    def result_limit(self, args: ToolArguments) -> int:
        requested = getattr(args, 'max_results', self.max_search_results)
        return max(1, min(requested, self.max_search_results))

    async def close(self) -> None:
        """Release provider resources."""


_STATIC_CATEGORIES: List[Dict[str, Any]] = [
    {'id': 'births', 'name': 'Births & Baptisms', 'description': 'Birth certificates, registrations and baptisms', 'resourceCount': 310},
    {'id': 'census', 'name': 'Census Records', 'description': 'Population census data', 'resourceCount': 452},
    {'id': 'military', 'name': 'Military Resources', 'description': 'Service, pension and draft records', 'resourceCount': 1204},
    {'id': 'newspapers', 'name': 'Newspapers', 'description': 'Historical newspapers and obituaries', 'resourceCount': 688},
    {'id': 'cemeteries', 'name': 'Cemeteries & Funeral Homes', 'description': 'Burial and interment records', 'resourceCount': 975},
    {'id': 'immigration', 'name': 'Immigration & Naturalization', 'description': 'Passenger lists and naturalization papers', 'resourceCount': 541},
    {'id': 'us-census-1940', 'name': '1940 U.S. Census', 'parentId': 'census', 'resourceCount': 37},
    {'id': 'uk-census', 'name': 'U.K. Census', 'parentId': 'census', 'resourceCount': 52},
]

_STATIC_RESOURCES: List[Dict[str, Any]] = [
    {
        'id': 'census/us/1940', 'title': '1940 U.S. Federal Census Index', 'url': 'https://www.cyndislist.com/us/census/1940/',
        'category': 'census', 'resourceType': 'census', 'location': {'country': 'United States'},
        'timeperiod': {'start': 1940, 'end': 1940}, 'isFree': True, 'hasDigitalRecords': True, 'language': 'English',
    },
    {
        'id': 'military/civil-war', 'title': 'Civil War Soldiers and Sailors Database', 'url': 'https://www.cyndislist.com/us/civil-war/',
        'category': 'military', 'resourceType': 'military', 'location': {'country': 'United States'},
        'timeperiod': {'start': 1861, 'end': 1865}, 'isFree': True, 'hasDigitalRecords': True, 'language': 'English',
    },
    {
        'id': 'immigration/ellis-island', 'title': 'Ellis Island Passenger Records', 'url': 'https://www.cyndislist.com/immigration/ellis-island/',
        'category': 'immigration', 'resourceType': 'immigration', 'location': {'country': 'United States', 'state': 'New York'},
        'timeperiod': {'start': 1892, 'end': 1924}, 'isFree': True, 'hasDigitalRecords': True, 'language': 'English',
    },
    {
        'id': 'newspapers/ireland', 'title': 'Irish Newspaper Archives', 'url': 'https://www.cyndislist.com/ireland/newspapers/',
        'category': 'newspapers', 'resourceType': 'newspapers', 'location': {'country': 'Ireland'},
        'timeperiod': {'start': 1738, 'end': 2000}, 'isFree': False, 'hasDigitalRecords': True, 'language': 'English',
    },
    {
        'id': 'cemeteries/quebec', 'title': 'Cimetieres du Quebec', 'url': 'https://www.cyndislist.com/canada/qc/cemeteries/',
        'category': 'cemeteries', 'resourceType': 'cemeteries', 'location': {'country': 'Canada', 'state': 'Quebec'},
        'isFree': True, 'hasDigitalRecords': False, 'language': 'French',
    },
    {
        'id': 'vital-records/england', 'title': 'FreeBMD England & Wales', 'url': 'https://www.cyndislist.com/uk/eng/vital-records/',
        'category': 'births', 'resourceType': 'vital_records', 'location': {'country': 'United Kingdom', 'state': 'England'},
        'timeperiod': {'start': 1837, 'end': 1992}, 'isFree': True, 'hasDigitalRecords': True, 'language': 'English',
    },
]


def _contains(haystack: Optional[str], needle: str) -> bool:
    return bool(haystack) and needle.lower() in haystack.lower()


def _location_text(resource: Dict[str, Any]) -> str:
    return ' '.join(str(v) for v in resource.get('location', {}).values())


class StaticResourceProvider(ResourceProvider):
    """
    Deterministic provider over a small built-in data set.

    Used by default and in tests; it never performs network I/O.
    """

    async def search_resources(self, args: SearchResourcesArgs) -> Dict[str, Any]:
        terms = args.query.lower().split()
        matches = []
        for resource in _STATIC_RESOURCES:
            text = f"{resource['title']} {resource['category']} {_location_text(resource)}".lower()
            if not any(term in text for term in terms):
                continue
            if args.location and not _contains(_location_text(resource), args.location):
                continue
            if args.resource_type != 'all' and resource.get('resourceType') != args.resource_type:
                continue
            if args.time_period and resource.get('timeperiod'):
                period = resource['timeperiod']
                if args.time_period.start and period.get('end') and period['end'] < args.time_period.start:
                    continue
                if args.time_period.end and period.get('start') and period['start'] > args.time_period.end:
                    continue
            matches.append(resource)
        page = matches[:self.result_limit(args)]
        return {'resources': page, 'totalCount': len(matches), 'page': 1, 'pageSize': len(page)}

    async def browse_categories(self, args: BrowseCategoriesArgs) -> Dict[str, Any]:
        categories = [c for c in _STATIC_CATEGORIES if c.get('parentId') == args.parent_category]
        if args.parent_category and not categories and not any(c['id'] == args.parent_category for c in _STATIC_CATEGORIES):
            raise ResourceNotFoundError(f"Category not found: {args.parent_category}")
        if not args.include_count:
            categories = [{k: v for k, v in c.items() if k != 'resourceCount'} for c in categories]
        return {'categories': categories, 'totalCount': len(categories)}

    async def get_resource_details(self, args: ResourceDetailsArgs) -> Dict[str, Any]:
        for resource in _STATIC_RESOURCES:
            if args.resource_id in (resource['id'], resource['url']):
                details = dict(resource)
                if args.include_related:
                    details['related'] = [
                        r['id'] for r in _STATIC_RESOURCES
                        if r['category'] == resource['category'] and r['id'] != resource['id']
                    ]
                return details
        raise ResourceNotFoundError(f"Resource not found: {args.resource_id}")

    async def filter_resources(self, args: FilterResourcesArgs) -> Dict[str, Any]:
        def keep(resource: Dict[str, Any]) -> bool:
            if args.categories and resource['category'] not in args.categories:
                return False
            if args.locations and not any(_contains(_location_text(resource), loc) for loc in args.locations):
                return False
            if args.languages and resource.get('language') not in args.languages:
                return False
            if args.free_only and not resource.get('isFree'):
                return False
            if args.has_digital_records and not resource.get('hasDigitalRecords'):
                return False
            return True

        resources = [r for r in _STATIC_RESOURCES if keep(r)]
        return {'resources': resources, 'totalCount': len(resources), 'filters': args.model_dump(by_alias=True)}

    async def get_location_resources(self, args: LocationResourcesArgs) -> Dict[str, Any]:
        location = args.model_dump(exclude_none=True)
        resources = []
        for resource in _STATIC_RESOURCES:
            where = resource.get('location', {})
            if where.get('country', '').lower() != args.country.lower():
                continue
            if args.state and where.get('state', '').lower() != args.state.lower():
                continue
            resources.append(resource)
        return {'location': location, 'resources': resources, 'totalCount': len(resources)}


_TITLE_RE = re.compile(r'<title[^>]*>(.*?)</title>', re.IGNORECASE | re.DOTALL)
_META_DESCRIPTION_RE = re.compile(
    r'<meta\s+[^>]*(?:name|property)=["\'](?:og:)?description["\'][^>]*content=["\']([^"\']*)["\']',
    re.IGNORECASE,
)
_ANCHOR_RE = re.compile(r'<a\s[^>]*href=["\']([^"\'#]+)["\'][^>]*>(.*?)</a>', re.IGNORECASE | re.DOTALL)
_TAG_RE = re.compile(r'<[^>]+>')


def _clean(text: str) -> str:
    return ' '.join(html.unescape(_TAG_RE.sub(' ', text)).split())


def _slug(value: str) -> str:
    return quote(re.sub(r'\s+', '-', value.strip().lower()))


class HttpResourceProvider(ResourceProvider):
    """
    Provider that fetches pages from the resource site with httpx.

    Extracts page title, description and outbound links only.
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None, client: Optional[httpx.AsyncClient] = None):
        super().__init__(config)
        self.base_url = self.config.get('base_url', 'https://www.cyndislist.com').rstrip('/')
        timeout = self.config.get('timeout_seconds', 30)
        self.async_client = client or httpx.AsyncClient(
            timeout=timeout,
            headers={'User-Agent': self.config.get('user_agent', 'CLG-MCP/1.0.0 (Genealogy Research Tool)')},
            follow_redirects=True,
        )
        logger.info(f"httpx.AsyncClient initialized for {self.base_url} with timeout={timeout}s")

    async def _fetch(self, url: str) -> str:
        try:
            response = await self.async_client.get(url)
            response.raise_for_status()
            return response.text
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 404:
                raise ResourceNotFoundError(f"Resource not found: {url}", data={'url': url})
            raise NetworkError(f"HTTP error! status: {e.response.status_code}", original_exception=e)
        except httpx.HTTPError as e:
            raise NetworkError(f"Request to {url} failed: {e}", original_exception=e)

    def _links(self, page: str, page_url: str, limit: int) -> List[Dict[str, Any]]:
        base_host = urlparse(self.base_url).netloc
        seen = set()
        links = []
        for href, label in _ANCHOR_RE.findall(page):
            url = urljoin(page_url, html.unescape(href))
            title = _clean(label)
            if not title or url in seen or not url.startswith(('http://', 'https://')):
                continue
            seen.add(url)
            parsed = urlparse(url)
            links.append({
                'id': parsed.path.strip('/') if parsed.netloc == base_host else url,
                'title': title,
                'url': url,
            })
            if len(links) >= limit:
                break
        return links

    def _page_summary(self, page: str) -> Dict[str, Optional[str]]:
        title = _TITLE_RE.search(page)
        description = _META_DESCRIPTION_RE.search(page)
        return {
            'title': _clean(title.group(1)) if title else None,
            'description': _clean(description.group(1)) if description else None,
        }

    async def search_resources(self, args: SearchResourcesArgs) -> Dict[str, Any]:
        query = args.query if not args.location else f"{args.query} {args.location}"
        url = f"{self.base_url}/search/?{urlencode({'q': query})}"
        limit = self.result_limit(args)
        resources = self._links(await self._fetch(url), url, limit)
        return {'resources': resources, 'totalCount': len(resources), 'page': 1, 'pageSize': limit, 'source': url}

    async def browse_categories(self, args: BrowseCategoriesArgs) -> Dict[str, Any]:
        path = f"/{args.parent_category.strip('/')}/" if args.parent_category else '/categories/'
        url = f"{self.base_url}{path}"
        categories = [
            {'id': link['id'], 'name': link['title'], 'url': link['url']}
            for link in self._links(await self._fetch(url), url, self.max_search_results)
        ]
        return {'categories': categories, 'totalCount': len(categories), 'source': url}

    async def get_resource_details(self, args: ResourceDetailsArgs) -> Dict[str, Any]:
        if args.resource_id.startswith('http'):
            url = args.resource_id
        else:
            url = f"{self.base_url}/{args.resource_id.lstrip('/')}"
        page = await self._fetch(url)
        summary = self._page_summary(page)
        details = {
            'id': args.resource_id,
            'title': summary['title'] or f"Resource {args.resource_id}",
            'url': url,
            'description': summary['description'],
            'lastUpdated': datetime.now(timezone.utc).isoformat(),
        }
        if args.include_related:
            details['related'] = self._links(page, url, 10)
        return details

    async def filter_resources(self, args: FilterResourcesArgs) -> Dict[str, Any]:
        params = [('category', c) for c in args.categories]
        params += [('location', loc) for loc in args.locations]
        params += [('language', lang) for lang in args.languages]
        if args.free_only:
            params.append(('free', '1'))
        if args.has_digital_records:
            params.append(('digital', '1'))
        url = f"{self.base_url}/search/?{urlencode(params)}"
        resources = self._links(await self._fetch(url), url, self.max_search_results)
        return {
            'resources': resources,
            'totalCount': len(resources),
            'filters': args.model_dump(by_alias=True),
            'source': url,
        }

    async def get_location_resources(self, args: LocationResourcesArgs) -> Dict[str, Any]:
        parts = [p for p in (args.country, args.state, args.county, args.city) if p]
        url = f"{self.base_url}/{'/'.join(_slug(p) for p in parts)}/"
        resources = self._links(await self._fetch(url), url, self.max_search_results)
        return {
            'location': args.model_dump(exclude_none=True),
            'resources': resources,
            'totalCount': len(resources),
            'source': url,
        }

    async def close(self) -> None:
        await self.async_client.aclose()


def create_provider(config: Dict[str, Any]) -> Any:
    """Build the provider named by `provider.type`, wrapped in a cache when `cache.enabled` is set."""
    provider_config = config.get('provider', {})
    if provider_config.get('type', 'static') == 'http':
        provider: ResourceProvider = HttpResourceProvider(provider_config)
    else:
        provider = StaticResourceProvider(provider_config)
    logger.info(f"Resource provider: {type(provider).__name__}")

    cache_config = config.get('cache', {})
    if cache_config.get('enabled'):
        return CachedResourceProvider(provider, cache_config)
    return provider
