import re
from typing import Any, Optional

from shelfsync.models import ConferenceRoom, Person, Space

DEFAULT_FIELD_MAPPING = {
    "unique_id_field": "articleId",
    "name_field": "articleName",
    "label_field": "labelCode",
    "nfc_field": "nfcUrl",
}

# Conference rooms share the article id space with spaces, told apart by this prefix.
CONFERENCE_PREFIX = "C"

EXTRA_FIELDS = ("data1", "data2", "data3", "data4", "data5", "nfc")

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


def _snake(name: str) -> str:
    return _CAMEL_BOUNDARY.sub("_", name).lower()


def field_mapping(store_settings: Optional[dict]) -> dict:
    configured = (store_settings or {}).get("field_mapping") or {}
    mapping = dict(DEFAULT_FIELD_MAPPING)
    mapping.update({key: value for key, value in configured.items() if value})
    return mapping


def _lookup(record: dict, key: str) -> Any:
    for candidate in (key, _snake(key)):
        value = record.get(candidate)
        if value not in (None, ""):
            return value
    nested = record.get("data")
    if isinstance(nested, dict) and nested.get(key) not in (None, ""):
        return nested[key]
    return None


def _carries(record: dict, key: str) -> bool:
    if key in record or _snake(key) in record:
        return True
    nested = record.get("data")
    return isinstance(nested, dict) and key in nested


def remote_id(record: dict, mapping: dict) -> Optional[str]:
    value = _lookup(record, mapping["unique_id_field"])
    return str(value) if value is not None else None


def remote_fields(record: dict, mapping: dict) -> tuple[Optional[str], dict]:
    """Return (label_code, data) for a remote article in local shape.

    label_code is "" when the article carries an empty label field (the label
    was unassigned in AIMS) and None when the field is absent altogether.
    """
    data: dict[str, Any] = {}
    name = _lookup(record, mapping["name_field"])
    if name is not None:
        data["name"] = name
    nested = record.get("data")
    if isinstance(nested, dict):
        data.update({key: value for key, value in nested.items() if value not in (None, "")})
    for key in EXTRA_FIELDS:
        if record.get(key) not in (None, ""):
            data[key] = record[key]
    nfc_url = _lookup(record, mapping["nfc_field"])
    if nfc_url is not None:
        data["nfcUrl"] = nfc_url
    label_code = _lookup(record, mapping["label_field"])
    if label_code is not None:
        return str(label_code), data
    if _carries(record, mapping["label_field"]):
        return "", data
    return None, data


def build_article(article_id: str, name: str, nfc_url: str, data: Optional[dict]) -> dict:
    return {
        "articleId": article_id,
        "articleName": name,
        "nfcUrl": nfc_url,
        "data": {
            key: str(value)
            for key, value in (data or {}).items()
            if value not in (None, "") and not isinstance(value, (dict, list))
        },
    }


def _name_and_nfc(data: dict, default_name: str) -> tuple[str, str]:
    name = data.get("name") or data.get("NAME") or data.get("ITEM_NAME") or default_name
    nfc_url = data.get("nfcUrl") or data.get("NFC_URL") or ""
    return str(name), str(nfc_url)


def build_space_article(space: Space) -> dict:
    data = space.data or {}
    name, nfc_url = _name_and_nfc(data, space.external_id)
    return build_article(space.external_id, name, nfc_url, data)


def build_person_article(person: Person) -> Optional[dict]:
    # Unassigned people have no label slot to show up on.
    if not person.assigned_space_id:
        return None
    data = person.data or {}
    name, nfc_url = _name_and_nfc(data, "Person")
    return build_article(person.assigned_space_id, name, nfc_url, data)


def build_conference_article(room: ConferenceRoom) -> dict:
    data = room.data or {}
    name, nfc_url = _name_and_nfc(data, room.external_id)
    return build_article(conference_article_id(room.external_id), name, nfc_url, data)


def conference_article_id(external_id: str) -> str:
    return f"{CONFERENCE_PREFIX}{external_id}"


def person_article_id(person: Person) -> Optional[str]:
    return person.assigned_space_id or person.external_id
