from datetime import date, datetime, time, timezone

from fastapi import Request

from app.errors import ValidationError


async def read_json_body(request: Request) -> dict:
    raw = await request.body()
    if not raw.strip():
        return {}
    try:
        payload = await request.json()
    except ValueError as exc:
        raise ValidationError('Request body must be JSON', field='body') from exc
    if not isinstance(payload, dict):
        raise ValidationError('Request body must be a JSON object', field='body')
    return payload


def require_field(payload: dict, field: str):
    value = payload.get(field)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError(f'{field} is required', field=field)
    return value


def parse_int(value, *, field: str) -> int:
    if isinstance(value, bool):
        raise ValidationError(f'{field} must be an integer', field=field)
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        raw = value.strip()
        # isdigit() is true for superscripts, which int() rejects.
        if raw.isascii() and raw.lstrip('-').isdigit():
            try:
                return int(raw)
            except ValueError as exc:
                raise ValidationError(f'{field} must be an integer', field=field) from exc
    raise ValidationError(f'{field} must be an integer', field=field)


def parse_optional_int(value, *, field: str) -> int | None:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    return parse_int(value, field=field)


def parse_datetime(value, *, field: str) -> datetime:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        # Epoch seconds.
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as exc:
            raise ValidationError(f'{field} is out of range', field=field) from exc
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f'{field} must be an ISO date or timestamp', field=field)
    raw = value.strip()
    try:
        parsed = datetime.fromisoformat(raw.replace('Z', '+00:00'))
    except ValueError:
        try:
            parsed = datetime.combine(date.fromisoformat(raw), time.min)
        except ValueError as exc:
            raise ValidationError(f'{field} must be an ISO date or timestamp', field=field) from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_int_list(value, *, field: str) -> list[int]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValidationError(f'{field} must be a list of ids', field=field)
    return [parse_int(item, field=field) for item in value]
