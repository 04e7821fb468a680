import ipaddress
import logging
import tarfile
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Optional

import geoip2.database
import geoip2.errors
import httpx

from .errors import GeoLookupFailure
from .proxy_detection import normalize_ip

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = Path("/app/data/geoip/GeoLite2-City.mmdb")

# Global reader instance
_reader: Optional[geoip2.database.Reader] = None
_db_path: Path = DEFAULT_DB_PATH


@dataclass(frozen=True)
class GeoDetails:
    geo_country: Optional[str] = None
    geo_region: Optional[str] = None
    geo_city: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    def as_columns(self) -> dict:
        return asdict(self)


EMPTY_GEO = GeoDetails()


def get_download_url(license_key: str) -> str:
    """Get MaxMind download URL for GeoLite2-City database."""
    return (
        f"https://download.maxmind.com/app/geoip_download?"
        f"edition_id=GeoLite2-City&license_key={license_key}&suffix=tar.gz"
    )


async def download_database(db_path: Path, license_key: str) -> bool:
    """Download and extract the GeoLite2-City database."""
    if not license_key:
        logger.info("MAXMIND_LICENSE_KEY not set, skipping GeoIP database download")
        return False

    try:
        db_path.parent.mkdir(parents=True, exist_ok=True)

        logger.info("Downloading GeoLite2-City database...")
        async with httpx.AsyncClient(timeout=60.0, follow_redirects=True) as client:
            response = await client.get(get_download_url(license_key))
            response.raise_for_status()

        # Save the tar.gz file
        tar_path = db_path.parent / "GeoLite2-City.tar.gz"
        tar_path.write_bytes(response.content)

        # Extract the .mmdb file
        with tarfile.open(tar_path, "r:gz") as tar:
            for member in tar.getmembers():
                if member.name.endswith(".mmdb"):
                    member.name = db_path.name
                    tar.extract(member, db_path.parent)
                    break

        tar_path.unlink()

        logger.info(f"GeoLite2-City database downloaded to {db_path}")
        return True

    except (httpx.HTTPError, tarfile.TarError, OSError) as e:
        logger.error(f"Failed to download GeoIP database: {e}")
        return False


def get_reader() -> Optional[geoip2.database.Reader]:
    """Get or create the GeoIP database reader."""
    global _reader

    if _reader is not None:
        return _reader

    if not _db_path.exists():
        return None

    try:
        _reader = geoip2.database.Reader(str(_db_path))
        return _reader
    except (OSError, ValueError) as e:
        logger.error(f"Failed to open GeoIP database: {e}")
        return None


def _is_public(ip: str) -> bool:
    try:
        return ipaddress.ip_address(ip).is_global
    except ValueError:
        return False


def lookup_ip(ip_address: Optional[str]) -> GeoDetails:
    """
    Resolve an IP address to coarse location.

    Unknown, private and unresolvable addresses give EMPTY_GEO. Reader errors
    raise GeoLookupFailure.
    """
    ip = normalize_ip(ip_address)
    if not ip or not _is_public(ip):
        return EMPTY_GEO

    reader = get_reader()
    if reader is None:
        return EMPTY_GEO

    try:
        response = reader.city(ip)
    except geoip2.errors.AddressNotFoundError:
        return EMPTY_GEO
    except (geoip2.errors.GeoIP2Error, ValueError) as e:
        raise GeoLookupFailure(f"GeoIP lookup error for {ip}: {e}") from e

    subdivision = response.subdivisions.most_specific
    return GeoDetails(
        geo_country=response.country.iso_code,
        geo_region=subdivision.iso_code,
        geo_city=response.city.name,
        latitude=response.location.latitude,
        longitude=response.location.longitude,
    )


async def init_geoip(db_path: str | Path = DEFAULT_DB_PATH, license_key: str = ""):
    """Initialize GeoIP database - download if not present."""
    global _db_path, _reader

    path = Path(db_path)
    if path != _db_path:
        _db_path = path
        _reader = None

    if not _db_path.exists():
        await download_database(_db_path, license_key)

    if get_reader():
        logger.info("GeoIP database ready")
    else:
        logger.info("GeoIP database not available")
