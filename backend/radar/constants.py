# backend/radar/constants.py

"""
Global constants used across modules: the User-Agent we send upstream, the
Brazil bounding box we poll, and the OpenSky state-vector field indices.
"""

from __future__ import annotations

from typing import Final

USER_AGENT = "brazil-flightradar/1.0 (+https://github.com/RomanDataLab/Brazil_flightradar)"

#: Approximate Brazil bounding box (decimal degrees)
BRAZIL_BOUNDS: Final[dict[str, float]] = {
    "lamin": -33.75,
    "lomin": -73.99,
    "lamax": 5.27,
    "lomax": -32.43,
}

# OpenSky state vector format (17 elements)
ICAO24: Final = 0
CALLSIGN: Final = 1
ORIGIN_COUNTRY: Final = 2
TIME_POSITION: Final = 3
LAST_CONTACT: Final = 4
LONGITUDE: Final = 5
LATITUDE: Final = 6
BARO_ALTITUDE: Final = 7
ON_GROUND: Final = 8
VELOCITY: Final = 9
TRUE_TRACK: Final = 10
VERTICAL_RATE: Final = 11
SENSORS: Final = 12
GEO_ALTITUDE: Final = 13
SQUAWK: Final = 14
SPI: Final = 15
POSITION_SOURCE: Final = 16

STATE_VECTOR_LEN: Final = 17
