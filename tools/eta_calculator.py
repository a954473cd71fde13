# tools/eta_calculator.py
import math

DEFAULT_SPEED_KMPH = 20.0


def haversine_meters(lat1, lon1, lat2, lon2):
    R = 6371000.0
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)
    a = math.sin(dphi/2.0)**2 + math.cos(phi1)*math.cos(phi2)*(math.sin(dlambda/2.0)**2)
    return 2 * R * math.asin(math.sqrt(a))


def calculate_eta_seconds(lat1, lon1, lat2, lon2, speed_kmph: float | None = None, traffic_multiplier: float = 1.0):
    speed = speed_kmph if speed_kmph and speed_kmph > 0 else DEFAULT_SPEED_KMPH
    dist_m = haversine_meters(lat1, lon1, lat2, lon2)
    speed_m_s = max(speed * 1000.0 / 3600.0, 0.1)
    return int(dist_m / speed_m_s * traffic_multiplier)


def eta_from_location(location: dict | None, target_lat, target_lon) -> int | None:
    """ETA in seconds from a bus location dict {"lat", "lon", "speed_kmph"?}; None when coordinates are missing."""
    if not location or target_lat is None or target_lon is None:
        return None
    lat, lon = location.get("lat"), location.get("lon")
    if lat is None or lon is None:
        return None
    return calculate_eta_seconds(float(lat), float(lon), float(target_lat), float(target_lon),
                                 speed_kmph=location.get("speed_kmph"))


def humanize_eta(seconds: int | None) -> str:
    if seconds is None:
        return "unknown"
    minutes = max(1, round(seconds / 60))
    if minutes < 60:
        return f"{minutes} minute" + ("s" if minutes != 1 else "")
    hours, rem = divmod(minutes, 60)
    text = f"{hours} hour" + ("s" if hours != 1 else "")
    if rem:
        text += f" {rem} minute" + ("s" if rem != 1 else "")
    return text
