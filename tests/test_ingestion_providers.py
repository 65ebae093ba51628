"""Tests for the HTTP geocoding providers and the GTFS stops table."""

import tempfile
from pathlib import Path

import httpx
import pytest
from shapely.geometry import LineString, MultiLineString
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from civic_ingest.core.schema import Coordinates
from civic_ingest.db.models import Base
from civic_ingest.ingestion.geocoding.address import GoogleGeocoder, is_generic_city_address
from civic_ingest.ingestion.geocoding.base import HttpProvider, haversine_distance
from civic_ingest.ingestion.geocoding.cadastre import CadastreError, CadastreProvider, rings_to_wgs84
from civic_ingest.ingestion.geocoding.gtfs import GtfsStopProvider, import_gtfs_stops
from civic_ingest.ingestion.geocoding.nominatim import NominatimProvider, normalize_address_for_nominatim
from civic_ingest.ingestion.geocoding.overpass import (
    LocalProjection,
    OverpassProvider,
    OverpassQueryError,
    build_street_query,
    elements_to_geometry,
    extract_section,
    find_intersection,
    normalize_street_name,
    parse_overpass_error,
    should_try_fallback,
)
from civic_ingest.ingestion.registry import LocalityConfig

SOFIA = LocalityConfig(
    code="bg.sofia",
    city="Sofia",
    country="Bulgaria",
    country_code="bg",
    timezone="Europe/Sofia",
    south=42.605,
    west=23.188,
    north=42.83,
    east=23.528,
    center_lat=42.6977,
    center_lng=23.3219,
    generic_addresses=["София"],
)

FAST = {"max_retries": 1, "retry_backoff": 0.0, "request_delay": 0.0}


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def google_result(formatted: str, lat: float, lng: float) -> dict:
    return {"formatted_address": formatted, "geometry": {"location": {"lat": lat, "lng": lng}}}


class TestHaversine:
    """Tests for haversine_distance."""

    def test_zero(self) -> None:
        assert haversine_distance(42.69, 23.32, 42.69, 23.32) == 0

    def test_one_thousandth_degree_latitude(self) -> None:
        assert haversine_distance(42.690, 23.32, 42.691, 23.32) == pytest.approx(111.2, abs=0.5)


class TestHttpProvider:
    """Tests for the retrying HTTP base."""

    @pytest.mark.asyncio
    async def test_retries_transient_status(self) -> None:
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            if len(calls) < 3:
                return httpx.Response(503)
            return httpx.Response(200, json={"ok": True})

        provider = HttpProvider(client=mock_client(handler), max_retries=3, retry_backoff=0.0)
        response = await provider.request("GET", "https://example.bg/api")
        assert response.json() == {"ok": True}
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self) -> None:
        provider = HttpProvider(client=mock_client(lambda request: httpx.Response(502)), **FAST)
        with pytest.raises(httpx.HTTPStatusError):
            await provider.request("GET", "https://example.bg/api")

    @pytest.mark.asyncio
    async def test_client_errors_are_returned(self) -> None:
        provider = HttpProvider(client=mock_client(lambda request: httpx.Response(404)), max_retries=3)
        response = await provider.request("GET", "https://example.bg/api")
        assert response.status_code == 404


class TestGoogleGeocoder:
    """Tests for GoogleGeocoder."""

    def test_generic_city_address(self) -> None:
        assert is_generic_city_address("Sofia, Bulgaria", SOFIA)
        assert is_generic_city_address("София", SOFIA)
        assert not is_generic_city_address("ul. \"Oborishte\" 15, 1504 Sofia, Bulgaria", SOFIA)

    @pytest.mark.asyncio
    async def test_skips_center_and_generic_results(self) -> None:
        seen_params = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen_params.append(dict(request.url.params))
            return httpx.Response(
                200,
                json={
                    "status": "OK",
                    "results": [
                        google_result("Sofia Center", 42.69770, 23.32190),
                        google_result("Sofia, Bulgaria", 42.70, 23.33),
                        google_result("ul. Oborishte 15, Sofia", 42.6950, 23.3380),
                    ],
                },
            )

        geocoder = GoogleGeocoder("key", SOFIA, client=mock_client(handler), **FAST)
        result = await geocoder.geocode("ул. Оборище 15")

        assert result.is_resolved
        assert result.value.original_text == "ул. Оборище 15"
        assert result.value.coordinates == Coordinates(lat=42.6950, lng=23.3380)
        assert seen_params[0]["components"] == "locality:Sofia|country:bg"
        assert seen_params[0]["address"] == "ул. Оборище 15, Sofia, Bulgaria"

    @pytest.mark.asyncio
    async def test_rejects_out_of_bounds(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"status": "OK", "results": [google_result("Plovdiv", 42.14, 24.75)]})

        geocoder = GoogleGeocoder("key", SOFIA, client=mock_client(handler), **FAST)
        assert not (await geocoder.geocode("ул. Оборище 15")).is_resolved

    @pytest.mark.asyncio
    async def test_zero_results(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"status": "ZERO_RESULTS", "results": []})

        geocoder = GoogleGeocoder("key", SOFIA, client=mock_client(handler), **FAST)
        result = await geocoder.geocode("nowhere")
        assert not result.is_resolved
        assert "ZERO_RESULTS" in result.reason

    @pytest.mark.asyncio
    async def test_geocode_many_deduplicates(self) -> None:
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(
                200, json={"status": "OK", "results": [google_result("ul. Oborishte 15", 42.6950, 23.3380)]}
            )

        geocoder = GoogleGeocoder("key", SOFIA, client=mock_client(handler), **FAST)
        results = await geocoder.geocode_many(["ул. Оборище 15", "ул. Оборище 15"])
        assert list(results) == ["ул. Оборище 15"]
        assert len(calls) == 1


class TestNominatimProvider:
    """Tests for NominatimProvider."""

    def test_normalize(self) -> None:
        assert normalize_address_for_nominatim("ул. Оборище №  15") == "ул. Оборище 15"

    @pytest.mark.asyncio
    async def test_first_in_bounds_result(self) -> None:
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                json=[
                    {"lat": "42.14", "lon": "24.75"},
                    {"lat": "42.6950", "lon": "23.3380"},
                ],
            )

        provider = NominatimProvider(SOFIA, client=mock_client(handler), **FAST)
        result = await provider.geocode("ул. Оборище № 15")

        assert result.value == Coordinates(lat=42.6950, lng=23.3380)
        assert seen[0].url.params["q"] == "ул. Оборище 15, Sofia, Bulgaria"
        assert seen[0].url.params["bounded"] == "1"

    @pytest.mark.asyncio
    async def test_nothing_in_bounds(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=[])

        provider = NominatimProvider(SOFIA, client=mock_client(handler), **FAST)
        assert not (await provider.geocode("ул. Оборище 15")).is_resolved


class TestOverpassHelpers:
    """Tests for the Overpass query and geometry helpers."""

    def test_normalize_street_name(self) -> None:
        assert normalize_street_name('бул. "Витоша"') == "витоша"
        assert normalize_street_name("ул.  „Граф  Игнатиев“") == "граф игнатиев"
        assert normalize_street_name("пл. Славейков") == "славейков"

    def test_parse_error(self) -> None:
        assert parse_overpass_error("<p><remark> runtime error: timeout </remark></p>") == "runtime error: timeout"
        assert parse_overpass_error("<html></html>") is None

    def test_should_try_fallback(self) -> None:
        assert should_try_fallback("HTTP 504: Gateway Timeout", 504)
        assert should_try_fallback("HTTP 429: Too Many Requests", 429)
        assert not should_try_fallback("HTTP 400: Bad Request", 400)
        assert not should_try_fallback("static error: parse error: unexpected token")

    def test_street_query_highways(self) -> None:
        assert "residential" in build_street_query("ул. Оборище", "1,2,3,4")
        assert "residential" not in build_street_query("бул. Витоша", "1,2,3,4")
        assert '"place"="square"' in build_street_query("пл. Славейков", "1,2,3,4")

    def test_elements_to_geometry(self) -> None:
        elements = [
            {"type": "way", "geometry": [{"lat": 42.69, "lon": 23.33}, {"lat": 42.70, "lon": 23.33}]},
            {"type": "way", "geometry": [{"lat": 42.69, "lon": 23.33}]},
            {"type": "node", "lat": 42.695, "lon": 23.32},
        ]
        geometry = elements_to_geometry(elements)
        assert isinstance(geometry, MultiLineString)
        assert len(geometry.geoms) == 2
        assert elements_to_geometry([]) is None

    def test_find_intersection(self) -> None:
        projection = LocalProjection(SOFIA.center_lat, SOFIA.center_lng)
        vertical = MultiLineString([[(23.33, 42.69), (23.33, 42.70)]])
        horizontal = MultiLineString([[(23.32, 42.695), (23.34, 42.695)]])
        center = Coordinates(lat=SOFIA.center_lat, lng=SOFIA.center_lng)

        point = find_intersection(vertical, horizontal, projection, center)
        assert point.lat == pytest.approx(42.695, abs=1e-4)
        assert point.lng == pytest.approx(23.33, abs=1e-4)

    def test_find_intersection_far_apart(self) -> None:
        projection = LocalProjection(SOFIA.center_lat, SOFIA.center_lng)
        first = MultiLineString([[(23.30, 42.69), (23.30, 42.70)]])
        second = MultiLineString([[(23.40, 42.69), (23.40, 42.70)]])
        center = Coordinates(lat=SOFIA.center_lat, lng=SOFIA.center_lng)
        assert find_intersection(first, second, projection, center) is None

    def test_extract_section(self) -> None:
        projection = LocalProjection(SOFIA.center_lat, SOFIA.center_lng)
        street = MultiLineString([[(23.33, 42.68), (23.33, 42.72)]])
        section = extract_section(
            street,
            Coordinates(lat=42.69, lng=23.33),
            Coordinates(lat=42.70, lng=23.33),
            projection,
        )
        assert isinstance(section, LineString)
        lats = [y for _, y in section.coords]
        assert min(lats) == pytest.approx(42.69, abs=1e-4)
        assert max(lats) == pytest.approx(42.70, abs=1e-4)


class TestOverpassProvider:
    """Tests for OverpassProvider instance fallback."""

    INSTANCES = ["https://overpass-a.example/api/interpreter", "https://overpass-b.example/api/interpreter"]

    @pytest.mark.asyncio
    async def test_falls_back_on_server_error(self) -> None:
        hosts = []

        def handler(request: httpx.Request) -> httpx.Response:
            hosts.append(request.url.host)
            if request.url.host == "overpass-a.example":
                return httpx.Response(504, text="<remark>timeout</remark>")
            return httpx.Response(200, json={"elements": []})

        provider = OverpassProvider(SOFIA, instances=self.INSTANCES, client=mock_client(handler), **FAST)
        assert await provider._query("[out:json];") == {"elements": []}
        assert hosts == ["overpass-a.example", "overpass-b.example"]

    @pytest.mark.asyncio
    async def test_no_fallback_on_query_error(self) -> None:
        hosts = []

        def handler(request: httpx.Request) -> httpx.Response:
            hosts.append(request.url.host)
            return httpx.Response(400, text="<remark>static error: parse error</remark>")

        provider = OverpassProvider(SOFIA, instances=self.INSTANCES, client=mock_client(handler), **FAST)
        with pytest.raises(OverpassQueryError):
            await provider._query("broken")
        assert hosts == ["overpass-a.example"]

    @pytest.mark.asyncio
    async def test_geometry_is_cached(self) -> None:
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(
                200,
                json={
                    "elements": [
                        {"type": "way", "geometry": [{"lat": 42.69, "lon": 23.33}, {"lat": 42.70, "lon": 23.33}]}
                    ]
                },
            )

        provider = OverpassProvider(SOFIA, instances=self.INSTANCES, client=mock_client(handler), **FAST)
        first = await provider.fetch_street_geometry("ул. Оборище")
        second = await provider.fetch_street_geometry(" ул. Оборище ")
        assert first is second
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_geocode_intersection(self) -> None:
        ways = {
            "оборище": [{"lat": 42.69, "lon": 23.33}, {"lat": 42.70, "lon": 23.33}],
            "шипка": [{"lat": 42.695, "lon": 23.32}, {"lat": 42.695, "lon": 23.34}],
        }

        def handler(request: httpx.Request) -> httpx.Response:
            query = httpx.QueryParams(request.content.decode())["data"]
            name = "оборище" if "оборище" in query else "шипка"
            return httpx.Response(200, json={"elements": [{"type": "way", "geometry": ways[name]}]})

        provider = OverpassProvider(SOFIA, instances=self.INSTANCES, client=mock_client(handler), **FAST)
        result = await provider.geocode_intersection("ул. Оборище", "ул. Шипка")

        assert result.is_resolved
        assert result.value.lat == pytest.approx(42.695, abs=1e-4)

    @pytest.mark.asyncio
    async def test_unknown_street(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"elements": []})

        provider = OverpassProvider(SOFIA, instances=self.INSTANCES, client=mock_client(handler), **FAST)
        result = await provider.geocode_intersection("ул. Няма", "ул. Шипка")
        assert not result.is_resolved
        assert "ул. Няма" in result.reason


class TestCadastreProvider:
    """Tests for CadastreProvider."""

    def test_rings_to_wgs84(self) -> None:
        rings = [[[690000.0, 4730000.0], [690050.0, 4730000.0], [690050.0, 4730050.0], [690000.0, 4730000.0]]]
        converted = rings_to_wgs84(rings, "7802")
        lng, lat = converted[0][0]
        assert 22.5 < lng < 24.0
        assert 42.0 < lat < 43.5

    def test_unknown_spatial_reference(self) -> None:
        with pytest.raises(CadastreError):
            rings_to_wgs84([[[0.0, 0.0]]], "4326")

    @pytest.mark.asyncio
    async def test_session_flow(self) -> None:
        steps = []

        def handler(request: httpx.Request) -> httpx.Response:
            path = request.url.path
            steps.append(path)
            if path == "/bg/Map/Index":
                return httpx.Response(
                    200, text='<input name="__RequestVerificationToken" type="hidden" value="tok123" />'
                )
            if path == "/bg/Map/FastSearch":
                assert request.url.params["KeyWords"] == "68134.203.1234"
                return httpx.Response(200, json={})
            if path == "/bg/Map/ReadFoundObjects":
                assert request.headers["X-CSRF-TOKEN"] == "tok123"
                return httpx.Response(200, json={"Data": [{"Id": 7, "Number": "68134.203.1234"}]})
            if path == "/bg/Map/GetGeometry/":
                return httpx.Response(
                    200,
                    json=[
                        {
                            "Geometry": {
                                "rings": [[[690000.0, 4730000.0], [690050.0, 4730000.0], [690050.0, 4730050.0]]]
                            },
                            "SpatialReferenceCode": 7802,
                        }
                    ],
                )
            return httpx.Response(404)

        provider = CadastreProvider("https://kais.example", client=mock_client(handler), **FAST)
        result = await provider.geocode("68134.203.1234")

        assert result.is_resolved
        assert result.value.identifier == "68134.203.1234"
        assert len(result.value.polygon[0]) == 3
        assert steps == ["/bg/Map/Index", "/bg/Map/FastSearch", "/bg/Map/ReadFoundObjects", "/bg/Map/GetGeometry/"]

    @pytest.mark.asyncio
    async def test_missing_csrf_token(self) -> None:
        provider = CadastreProvider(
            "https://kais.example", client=mock_client(lambda request: httpx.Response(200, text="<html/>")), **FAST
        )
        result = await provider.geocode("68134.203.1234")
        assert not result.is_resolved
        assert "CSRF" in result.reason

    @pytest.mark.asyncio
    async def test_not_found(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/bg/Map/Index":
                return httpx.Response(200, text='name="__RequestVerificationToken" value="tok"')
            if request.url.path == "/bg/Map/ReadFoundObjects":
                return httpx.Response(200, json={"Data": []})
            return httpx.Response(200, json={})

        provider = CadastreProvider("https://kais.example", client=mock_client(handler), **FAST)
        assert await provider.geocode_many(["68134.203.1234"]) == {}

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "found_objects,geometry",
        [
            ([], None),
            ({"Data": ["68134.203.1234"]}, None),
            ({"Data": [{"Id": 7}]}, ["not an object"]),
            ({"Data": [{"Id": 7}]}, [{"Geometry": ["rings"], "SpatialReferenceCode": 7802}]),
            ({"Data": [{"Id": 7}]}, [{"Geometry": {"rings": [[["x"]]]}, "SpatialReferenceCode": 7802}]),
        ],
    )
    async def test_unexpected_payloads_are_unresolved(self, found_objects, geometry) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/bg/Map/Index":
                return httpx.Response(200, text='name="__RequestVerificationToken" value="tok"')
            if request.url.path == "/bg/Map/ReadFoundObjects":
                return httpx.Response(200, json=found_objects)
            if request.url.path == "/bg/Map/GetGeometry/":
                return httpx.Response(200, json=geometry)
            return httpx.Response(200, json={})

        provider = CadastreProvider("https://kais.example", client=mock_client(handler), **FAST)
        result = await provider.geocode("68134.203.1234")

        assert not result.is_resolved


class TestGtfs:
    """Tests for the GTFS import and stop provider."""

    @pytest.fixture
    def session(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            engine = create_engine(f"sqlite:///{Path(tmpdir) / 'test.db'}", echo=False)
            Base.metadata.create_all(engine)
            session = sessionmaker(bind=engine, autoflush=False)()
            yield session
            session.close()
            engine.dispose()

    @pytest.fixture
    def stops_file(self):
        content = (
            "\ufeffstop_id,stop_code,stop_name,stop_lat,stop_lon\n"
            "1,0123,Площад Славейков,42.6935,23.3215\n"
            "2,,Без код,42.0,23.0\n"
            "3,0456,Счупена,not-a-number,23.0\n"
        )
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "stops.txt"
            path.write_text(content, encoding="utf-8")
            yield path

    def test_import(self, session, stops_file: Path) -> None:
        assert import_gtfs_stops(session, stops_file) == 1

    @pytest.mark.asyncio
    async def test_geocode(self, session, stops_file: Path) -> None:
        import_gtfs_stops(session, stops_file)
        session.commit()

        provider = GtfsStopProvider(session)
        result = await provider.geocode("0123")
        assert result.value.original_text == "Спирка 0123"
        assert result.value.formatted_address == "Площад Славейков (0123)"
        assert result.value.coordinates == Coordinates(lat=42.6935, lng=23.3215)

        assert not (await provider.geocode("9999")).is_resolved
        assert len(await provider.geocode_many(["0123", "9999"])) == 1

