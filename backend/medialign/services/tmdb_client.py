# tmdb_client.py
import asyncio
import time
from collections.abc import Callable
from datetime import timedelta
from functools import wraps
from typing import Any, TypeVar

import requests
from loguru import logger
from pydantic import BaseModel, Field

from medialign.core.errors import MetadataError
from medialign.models import CacheKind
from medialign.services.metadata_cache import DEFAULT_MAX_AGE, MetadataCache

F = TypeVar("F", bound=Callable[..., Any])

BASE_URL = "https://api.themoviedb.org/3"
REQUEST_TIMEOUT = 30


def retry_network_operation(max_retries: int = 3, base_delay: float = 1.0) -> Callable[[F], F]:
    """Decorator for retrying network operations."""

    def decorator(func: F) -> F:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            last_exception = None
            delay = base_delay

            for attempt in range(max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except (requests.RequestException, ConnectionError, TimeoutError) as e:
                    last_exception = e
                    if attempt == max_retries:
                        logger.error(
                            f"Max retries ({max_retries}) exceeded for {func.__name__}: {e}"
                        )
                        raise e

                    logger.warning(
                        f"Network retry {attempt + 1}/{max_retries + 1} for {func.__name__}: {e}"
                    )
                    time.sleep(delay)
                    delay = min(delay * 2, 30)  # Cap at 30 seconds

            raise last_exception

        return wrapper  # type: ignore

    return decorator


class EpisodeInfo(BaseModel):
    external_id: str
    season_number: int
    episode_number: int
    title: str = ""
    synopsis: str = ""
    air_date: str | None = None


class SeasonInfo(BaseModel):
    series_id: str
    season_number: int
    title: str = ""
    episodes: list[EpisodeInfo] = Field(default_factory=list)


class SeriesInfo(BaseModel):
    external_id: str
    title: str
    overview: str = ""
    first_air_date: str | None = None
    number_of_seasons: int = 0
    season_numbers: list[int] = Field(default_factory=list)


class SearchResult(BaseModel):
    external_id: str
    title: str
    first_air_date: str | None = None
    overview: str = ""


def _parse_episode(data: dict, season_number: int | None = None) -> EpisodeInfo:
    return EpisodeInfo(
        external_id=str(data["id"]),
        season_number=data.get("season_number", season_number),
        episode_number=data["episode_number"],
        title=data.get("name") or "",
        synopsis=data.get("overview") or "",
        air_date=data.get("air_date") or None,
    )


class TmdbClient:
    """Blocking TMDB v3 client returning normalized series/episode shapes.

    Keys longer than 40 characters are v4 read access tokens and are sent as
    a bearer header; shorter ones are v3 keys sent as the api_key parameter.
    """

    def __init__(self, api_key: str, base_url: str = BASE_URL) -> None:
        self.api_key = (api_key or "").strip()
        self.base_url = base_url.rstrip("/")

    def _auth(self, params: dict) -> dict:
        if not self.api_key:
            raise MetadataError("TMDB API key not configured")

        headers = {}
        if len(self.api_key) > 40:  # v4 tokens are long JWTs
            headers["Authorization"] = f"Bearer {self.api_key}"
        else:
            params["api_key"] = self.api_key
        return headers

    @retry_network_operation(max_retries=3, base_delay=1.0)
    def _fetch(self, path: str, params: dict) -> requests.Response:
        headers = self._auth(params)
        response = requests.get(
            f"{self.base_url}{path}", headers=headers, params=params, timeout=REQUEST_TIMEOUT
        )
        if response.status_code >= 500:
            # Server side trouble is worth another attempt
            response.raise_for_status()
        return response

    def _get(self, path: str, **params: Any) -> dict:
        """GET a TMDB resource.

        Raises:
            MetadataError: On a missing key, HTTP error or undecodable body
        """
        try:
            response = self._fetch(path, params)
        except requests.RequestException as e:
            raise MetadataError(f"TMDB request {path} failed: {e}") from e

        if response.status_code == 401:
            raise MetadataError("TMDB rejected the API key (401)")
        if response.status_code == 404:
            raise MetadataError(f"TMDB resource not found: {path}")
        if response.status_code != 200:
            logger.error(f"HTTP Error {response.status_code}: {response.text[:500]}")
            raise MetadataError(f"TMDB request {path} failed with HTTP {response.status_code}")

        try:
            return response.json()
        except ValueError as e:
            raise MetadataError(f"TMDB returned invalid JSON for {path}") from e

    def get_series_info(self, series_id: str) -> SeriesInfo:
        data = self._get(f"/tv/{series_id}")
        seasons = sorted(
            s["season_number"] for s in data.get("seasons") or [] if "season_number" in s
        )
        if not seasons:
            seasons = list(range(1, (data.get("number_of_seasons") or 0) + 1))

        info = SeriesInfo(
            external_id=str(data.get("id", series_id)),
            title=data.get("name") or "",
            overview=data.get("overview") or "",
            first_air_date=data.get("first_air_date") or None,
            number_of_seasons=data.get("number_of_seasons") or len(seasons),
            season_numbers=seasons,
        )
        logger.info(f"Fetched TMDB series '{info.title}' (ID: {info.external_id})")
        return info

    def get_season_info(self, series_id: str, season_number: int) -> SeasonInfo:
        logger.info(f"Fetching season details for show {series_id} Season {season_number}...")
        data = self._get(f"/tv/{series_id}/season/{season_number}")
        try:
            episodes = [_parse_episode(ep, season_number) for ep in data.get("episodes", [])]
        except (KeyError, TypeError) as e:
            raise MetadataError(
                f"Malformed episode list for show {series_id} Season {season_number}: {e}"
            ) from e

        return SeasonInfo(
            series_id=str(series_id),
            season_number=season_number,
            title=data.get("name") or "",
            episodes=episodes,
        )

    def get_episode_info(
        self, series_id: str, season_number: int, episode_number: int
    ) -> EpisodeInfo:
        data = self._get(f"/tv/{series_id}/season/{season_number}/episode/{episode_number}")
        try:
            return _parse_episode(data, season_number)
        except (KeyError, TypeError) as e:
            raise MetadataError(f"Malformed episode payload: {e}") from e

    def get_all_episodes(self, series_id: str) -> list[EpisodeInfo]:
        """Every regular-season episode. Season 0 (specials) is skipped."""
        series = self.get_series_info(series_id)
        episodes: list[EpisodeInfo] = []
        for season_number in series.season_numbers:
            if season_number == 0:
                continue
            episodes.extend(self.get_season_info(series_id, season_number).episodes)
        return episodes

    def search_by_title(self, title: str) -> list[SearchResult]:
        data = self._get("/search/tv", query=title)
        results = [
            SearchResult(
                external_id=str(item["id"]),
                title=item.get("name") or "",
                first_air_date=item.get("first_air_date") or None,
                overview=item.get("overview") or "",
            )
            for item in data.get("results", [])
            if "id" in item
        ]
        logger.debug(f"TMDB search for '{title}': {len(results)} results")
        return results


class CachedMetadataProvider:
    """TmdbClient behind the Metadata Cache.

    Fresh entries are served from the cache. Misses and expired entries are
    fetched in a worker thread and written back.
    """

    def __init__(
        self,
        client: TmdbClient,
        cache: MetadataCache | None = None,
        max_age: timedelta = DEFAULT_MAX_AGE,
    ) -> None:
        self.client = client
        self.cache = cache or MetadataCache(max_age=max_age)
        self.max_age = max_age

    async def get_series_info(self, series_id: str) -> SeriesInfo:
        cached = await self.cache.get(CacheKind.SERIES, series_id, max_age=self.max_age)
        if cached is not None:
            return SeriesInfo.model_validate(cached.payload)

        info = await asyncio.to_thread(self.client.get_series_info, series_id)
        await self.cache.put(CacheKind.SERIES, series_id, info.model_dump())
        return info

    async def get_season_info(self, series_id: str, season_number: int) -> SeasonInfo:
        cached = await self.cache.get(
            CacheKind.SEASON, series_id, season_number, max_age=self.max_age
        )
        if cached is not None:
            return SeasonInfo.model_validate(cached.payload)

        info = await asyncio.to_thread(self.client.get_season_info, series_id, season_number)
        await self.cache.put(CacheKind.SEASON, series_id, info.model_dump(), season=season_number)
        return info

    async def get_episode_info(
        self, series_id: str, season_number: int, episode_number: int
    ) -> EpisodeInfo:
        cached = await self.cache.get(
            CacheKind.EPISODE, series_id, season_number, episode_number, max_age=self.max_age
        )
        if cached is not None:
            return EpisodeInfo.model_validate(cached.payload)

        info = await asyncio.to_thread(
            self.client.get_episode_info, series_id, season_number, episode_number
        )
        await self.cache.put(
            CacheKind.EPISODE,
            series_id,
            info.model_dump(),
            season=season_number,
            episode=episode_number,
        )
        return info

    async def get_all_episodes(self, series_id: str) -> list[EpisodeInfo]:
        series = await self.get_series_info(series_id)
        episodes: list[EpisodeInfo] = []
        for season_number in series.season_numbers:
            if season_number == 0:
                continue
            season = await self.get_season_info(series_id, season_number)
            episodes.extend(season.episodes)
        logger.info(f"Loaded {len(episodes)} episodes for '{series.title}'")
        return episodes

    async def search_by_title(self, title: str) -> list[SearchResult]:
        # Searches are not cached
        return await asyncio.to_thread(self.client.search_by_title, title)


async def create_metadata_provider() -> CachedMetadataProvider:
    """Provider configured from the stored settings."""
    from medialign.services.config_service import (
        TMDB_API_KEY,
        get_cache_max_age_days,
        get_setting,
    )

    api_key = await get_setting(TMDB_API_KEY) or ""
    max_age = timedelta(days=await get_cache_max_age_days())
    return CachedMetadataProvider(TmdbClient(api_key), max_age=max_age)
