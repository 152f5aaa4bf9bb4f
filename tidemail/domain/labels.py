import re
from dataclasses import dataclass
from enum import Enum

from tidemail.constants import SYSTEM_LABEL_ORDER

WORD_RE = re.compile(r"\w\S*")


class LabelOrigin(Enum):
    SYSTEM = "system"
    USER = "user"


@dataclass(frozen=True)
class Label:
    id: str
    name: str
    origin: LabelOrigin
    display_name: str
    visible: bool = True
    message_list_visibility: str = ""

    @property
    def is_system(self):
        return self.origin is LabelOrigin.SYSTEM


def label_display_name(raw_name):
    """``CATEGORY_SOCIAL`` -> ``Social``; ``my_work_stuff`` -> ``My Work Stuff``."""
    text = re.sub(r"^CATEGORY_", "", raw_name or "").replace("_", " ")
    return WORD_RE.sub(lambda m: m.group(0)[:1].upper() + m.group(0)[1:].lower(), text)


def label_origin(raw):
    return LabelOrigin.SYSTEM if (raw.get("type") or "").lower() == "system" else LabelOrigin.USER


def build_label(raw, overrides=None):
    """Build a ``Label`` from an API record.

    User labels take visibility from the server. System label visibility cannot
    be changed remotely, so a locally stored override wins when present.
    """
    label_id = raw.get("id") or ""
    name = raw.get("name") or label_id
    origin = label_origin(raw)
    remote_visible = raw.get("labelListVisibility") != "labelHide"
    match origin:
        case LabelOrigin.SYSTEM:
            visible = (overrides or {}).get(label_id, remote_visible)
        case LabelOrigin.USER:
            visible = remote_visible
    return Label(
        id=label_id,
        name=name,
        origin=origin,
        display_name=label_display_name(name),
        visible=bool(visible),
        message_list_visibility=raw.get("messageListVisibility") or "",
    )


def label_sort_key(label):
    if label.is_system:
        try:
            rank = SYSTEM_LABEL_ORDER.index(label.id)
        except ValueError:
            rank = len(SYSTEM_LABEL_ORDER)
        return (0, rank, label.display_name.lower())
    return (1, 0, label.display_name.lower())


def is_label_visible(label):
    return label.visible
