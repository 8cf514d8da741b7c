import re
import unicodedata


def slugify(value: str, max_length: int = 200) -> str:
    """
    Turns a title into a lowercase, hyphen-separated ASCII slug.

    Accented characters are folded to their ASCII base; anything that is not
    a letter or digit becomes a separator.
    """
    normalized = unicodedata.normalize("NFKD", value or "").encode("ascii", "ignore").decode("ascii")
    slug = re.sub(r"[^a-zA-Z0-9]+", "-", normalized).strip("-").lower()
    return slug[:max_length].rstrip("-") or "document"


def get_unique_slug(base: str, taken) -> str:
    """
    Returns ``base`` or ``base-N`` for the smallest N >= 2 not in ``taken``.

    Args:
        base (str): Desired slug
        taken (Iterable[str]): Slugs already in use
    """
    taken = set(taken)
    if base not in taken:
        return base
    counter = 2
    while f"{base}-{counter}" in taken:
        counter += 1
    return f"{base}-{counter}"


def sanitize_filename(filename: str) -> str:
    """
    Strips directory components and unsafe characters from an uploaded filename.
    """
    name = re.split(r"[\\/]", filename or "")[-1]
    name = re.sub(r"[^\w.\- ]", "_", name).strip(" .")
    return name or "upload"
