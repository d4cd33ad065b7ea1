from typing import NamedTuple


class Region(NamedTuple):
    name: str
    code: str


REGIONS = [
    Region("Amsterdam, Netherlands", "ams"),
    Region("Ashburn, Virginia", "iad"),
    Region("Atlanta, Georgia", "atl"),
    Region("Bogotá, Colombia", "bog"),
    Region("Boston, Massachusetts", "bos"),
    Region("Bucharest, Romania", "otp"),
    Region("Chicago, Illinois", "ord"),
    Region("Dallas, Texas", "dfw"),
    Region("Denver, Colorado", "den"),
    Region("Ezeiza, Argentina", "eze"),
    Region("Frankfurt, Germany", "fra"),
    Region("Guadalajara, Mexico", "gdl"),
    Region("Hong Kong, Hong Kong", "hkg"),
    Region("Johannesburg, South Africa", "jnb"),
    Region("London, United Kingdom", "lhr"),
    Region("Los Angeles, California", "lax"),
    Region("Madrid, Spain", "mad"),
    Region("Miami, Florida", "mia"),
    Region("Montreal, Canada", "yul"),
    Region("Mumbai, India", "bom"),
    Region("Paris, France", "cdg"),
    Region("Phoenix, Arizona", "phx"),
    Region("Querétaro, Mexico", "qro"),
    Region("Rio de Janeiro, Brazil", "gig"),
    Region("San Jose, California", "sjc"),
    Region("Santiago, Chile", "scl"),
    Region("Sao Paulo, Brazil", "gru"),
    Region("Seattle, Washington", "sea"),
    Region("Secaucus, NJ", "ewr"),
    Region("Singapore, Singapore", "sin"),
    Region("Stockholm, Sweden", "arn"),
    Region("Sydney, Australia", "syd"),
    Region("Tokyo, Japan", "nrt"),
    Region("Toronto, Canada", "yyz"),
    Region("Warsaw, Poland", "waw"),
]

_BY_CODE = {region.code: region for region in REGIONS}


def get_region(code: str) -> Region | None:
    return _BY_CODE.get(code)


def is_known_region(code: str) -> bool:
    return code in _BY_CODE


def region_display_name(code: str) -> str:
    region = _BY_CODE.get(code)
    return f"{region.name} ({region.code})" if region else code
