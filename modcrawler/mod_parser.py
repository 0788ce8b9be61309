"""
Mod metadata parser
Extracts mod metadata from mod.json / mod.hjson files and README markdown
"""

import logging
import re
from dataclasses import dataclass
from typing import Optional, Union

import hjson
import jsonschema
import yaml

from .errors import MalformedError, NoMetadataError
from .models import Completeness, Dependency, ModRecord

logger = logging.getLogger(__name__)

CONFIG_SUFFIXES = ('.json', '.hjson', '.json5')

# Keys of the game's mod.json, mapped to ModRecord fields
FIELD_KEYS = {
    'name': 'name',
    'displayName': 'display_name',
    'version': 'version',
    'description': 'description',
    'author': 'author',
    'dependencies': 'dependencies',
    'minGameVersion': 'min_game_version',
    'hidden': 'hidden',
    'main': 'main_script',
}

TEXT_OR_NUMBER = {'type': ['string', 'number']}

MOD_INFO_SCHEMA = {
    'type': 'object',
    'properties': {
        'name': {'type': 'string', 'minLength': 1},
        'displayName': {'type': 'string'},
        'version': TEXT_OR_NUMBER,
        'description': {'type': 'string'},
        'author': {'type': 'string'},
        'dependencies': {
            'oneOf': [
                {'type': 'array', 'items': {'type': 'string'}},
                {'type': 'object', 'additionalProperties': TEXT_OR_NUMBER},
            ]
        },
        'minGameVersion': TEXT_OR_NUMBER,
        'hidden': {'type': 'boolean'},
        'main': {'type': 'string'},
    },
}

_VALIDATOR = jsonschema.Draft7Validator(MOD_INFO_SCHEMA)

# Colour markup used by the game, e.g. "[orange]Name[]" or "[#ff0000]"
MARKUP_RE = re.compile(r'\[(?:#[0-9a-fA-F]{3,8}|[a-zA-Z]+|)\](?!\()')

FRONTMATTER_RE = re.compile(r'^---\s*\n(.*?)\n---\s*(?:\n|$)', re.DOTALL)

KEY_VALUE_RE = re.compile(
    r'^[ \t]*(?:[-*][ \t]+)?\**["\']?'
    r'(name|displayName|display name|version|author|description|depends|dependencies|minGameVersion)'
    r'["\']?\**[ \t]*[:=][ \t]*\**[ \t]*(.+?)[ \t]*$',
    re.IGNORECASE | re.MULTILINE,
)

HEADING_RE = re.compile(r'^#{1,2}[ \t]+(.+?)[ \t#]*$', re.MULTILINE)

DEPENDENCY_RE = re.compile(r'^([^\s@<>=~^:]+)\s*[@:]?\s*(.*)$')

ASSET_ROOTS = ('', 'assets/')
ASSET_DIRS = ('content', 'bundles', 'sounds', 'schematics', 'sprites-override', 'sprites', 'scripts')
CONTENT_DIRS = ('items', 'blocks', 'mechs', 'liquids', 'units', 'zones')

HEURISTIC_KEYS = {
    'name': 'name',
    'displayname': 'display_name',
    'display name': 'display_name',
    'version': 'version',
    'author': 'author',
    'description': 'description',
    'depends': 'dependencies',
    'dependencies': 'dependencies',
    'mingameversion': 'min_game_version',
}


@dataclass(frozen=True)
class StructuredMatch:
    """Record parsed from a config document"""
    record: ModRecord


@dataclass(frozen=True)
class HeuristicMatch:
    """Record scraped from loosely structured text"""
    record: ModRecord


ParseResult = Union[StructuredMatch, HeuristicMatch]


def strip_markup(text: str) -> str:
    """Remove game colour tags"""
    return MARKUP_RE.sub('', text or '').strip()


def _as_text(value) -> Optional[str]:
    # Numbers arrive as Decimal, str() keeps the digits as written ("1.10")
    if value is None or isinstance(value, (bool, dict, list)):
        return None
    text = str(value).strip()
    return text or None


def _split_dependency(entry: str) -> Optional[Dependency]:
    entry = entry.strip().strip('"\'')
    if not entry:
        return None
    match = DEPENDENCY_RE.match(entry)
    if not match:
        return None
    return Dependency(match.group(1), match.group(2).strip())


def parse_dependencies(value) -> tuple:
    """Dependencies from a list of entries, a name -> constraint map, or a comma separated string"""
    if isinstance(value, str):
        items = [_split_dependency(part) for part in re.split(r'[,;]', value)]
    elif isinstance(value, dict):
        items = [Dependency(str(k).strip(), _as_text(v) or '') for k, v in value.items() if str(k).strip()]
    elif isinstance(value, list):
        items = [_split_dependency(str(v)) for v in value if v is not None]
    else:
        items = []

    seen = set()
    deps = []
    for dep in items:
        if dep and dep.name not in seen:
            seen.add(dep.name)
            deps.append(dep)
    return tuple(deps)


def classify_assets(paths) -> tuple:
    """
    Asset and content kinds present in a repository tree. Mods keep their
    folders at the root or under assets/, content kinds live in content/<kind>/.
    Returns (assets, contents), each ordered like ASSET_DIRS / CONTENT_DIRS.
    """
    folders = set()
    kinds = set()
    for path in paths:
        for root in ASSET_ROOTS:
            if not path.startswith(root):
                continue
            parts = path[len(root):].split('/')
            if len(parts) > 1 and parts[0] in ASSET_DIRS:
                folders.add(parts[0])
                if parts[0] == 'content' and len(parts) > 2 and parts[1] in CONTENT_DIRS:
                    kinds.add(parts[1])

    assets = tuple(d for d in ASSET_DIRS if d in folders)
    contents = tuple(k for k in CONTENT_DIRS if k in kinds)
    return assets, contents


class ModParser:
    """Parse mod metadata files into ModRecord"""

    @staticmethod
    def decode(data: bytes) -> str:
        if isinstance(data, str):
            return data
        return data.decode('utf-8-sig', errors='replace').replace('\r\n', '\n')

    @staticmethod
    def is_config_hint(source_hint: str) -> bool:
        return (source_hint or '').lower().endswith(CONFIG_SUFFIXES)

    @staticmethod
    def parse_structured(text: str) -> Optional[dict]:
        """Parse the Hjson dialect (plain JSON is a subset). None on structural failure."""
        try:
            value = hjson.loads(text, use_decimal=True)
        except Exception as e:
            logger.debug(f"Structured parse failed: {e}")
            return None
        return dict(value) if isinstance(value, dict) else None

    @staticmethod
    def validate_fields(document: dict) -> tuple:
        """
        Keep the recognized keys whose values have a usable type.
        Returns (fields, problems).
        """
        fields = {k: v for k, v in document.items() if k in FIELD_KEYS}
        problems = []
        for error in _VALIDATOR.iter_errors(fields):
            key = error.path[0] if error.path else None
            problems.append(f"{key or 'document'}: {error.message}")
            if key in fields:
                fields.pop(key)
        return fields, problems

    @staticmethod
    def parse_frontmatter(text: str) -> dict:
        """Extract YAML frontmatter"""
        match = FRONTMATTER_RE.match(text)
        if not match:
            return {}
        try:
            # BaseLoader keeps scalars as text, "version: 1.10" must not become 1.1
            data = yaml.load(match.group(1), Loader=yaml.BaseLoader) or {}
        except yaml.YAMLError:
            return {}
        return data if isinstance(data, dict) else {}

    @staticmethod
    def extract_title(text: str) -> Optional[str]:
        """Extract title from the first # heading"""
        match = HEADING_RE.search(text)
        if match:
            title = strip_markup(match.group(1))
            return title or None
        return None

    @staticmethod
    def extract_description(text: str) -> Optional[str]:
        """First paragraph after the title"""
        text = FRONTMATTER_RE.sub('', text)

        description_lines = []
        found_title = False
        for line in text.strip().split('\n'):
            line = line.strip()
            if line.startswith('#'):
                if description_lines:
                    break
                found_title = True
                continue
            if KEY_VALUE_RE.match(line):
                continue
            if found_title and line and not line.startswith(('!', '[!', '<', '|', '```')):
                description_lines.append(line)
                if len(' '.join(description_lines)) > 100:
                    break
            elif found_title and not line and description_lines:
                break

        if description_lines:
            desc = strip_markup(' '.join(description_lines))
            if len(desc) > 200:
                desc = desc[:197] + '...'
            return desc or None
        return None

    def _heuristic_fields(self, text: str, use_headings: bool = True) -> dict:
        fields = {}
        for key, value in self.parse_frontmatter(text).items():
            target = HEURISTIC_KEYS.get(str(key).lower())
            if target and value is not None:
                fields.setdefault(target, value)

        for match in KEY_VALUE_RE.finditer(text):
            target = HEURISTIC_KEYS[match.group(1).lower()]
            fields.setdefault(target, match.group(2).rstrip(',').strip('`"\''))

        # In config files "#" starts a comment, not a heading
        title = self.extract_title(text) if use_headings else None
        if title:
            fields.setdefault('heading', title)
            description = self.extract_description(text)
            if description:
                fields.setdefault('description', description)
        return fields

    @staticmethod
    def build_record(fields: dict, repo: str, source_path: str, match: str) -> ModRecord:
        declared_name = strip_markup(_as_text(fields.get('name')) or '')
        display_name = _as_text(fields.get('display_name'))
        heading = fields.get('heading')

        name = declared_name or strip_markup(display_name or '') or heading or repo.split('/')[-1]
        version = _as_text(fields.get('version'))
        author = _as_text(fields.get('author'))

        has_name = bool(declared_name or display_name or heading)
        completeness = Completeness.FULL if has_name and version else Completeness.PARTIAL

        return ModRecord(
            repo=repo,
            name=name,
            version=version,
            dependencies=parse_dependencies(fields.get('dependencies')),
            description=strip_markup(_as_text(fields.get('description')) or ''),
            completeness=completeness,
            display_name=display_name or (heading if heading and heading != name else None),
            author=strip_markup(author) if author else None,
            min_game_version=_as_text(fields.get('min_game_version')),
            hidden=fields.get('hidden') is True,
            main_script=_as_text(fields.get('main_script')),
            source_path=source_path,
            match=match,
        )

    def parse(self, data: bytes, source_hint: str = '', repo: str = '') -> ParseResult:
        """
        Parse raw file bytes. Structured parse first for config files, then
        heuristic extraction. Raises NoMetadataError when nothing recognizable
        is found, MalformedError when a config document only holds unusable values.
        """
        text = self.decode(data)
        problems = []

        if self.is_config_hint(source_hint) or text.lstrip().startswith('{'):
            document = self.parse_structured(text)
            if document is not None:
                fields, problems = self.validate_fields(document)
                for problem in problems:
                    logger.debug(f"{repo}/{source_hint}: dropped {problem}")
                if any(k in fields for k in ('name', 'displayName', 'version')):
                    mapped = {FIELD_KEYS[k]: v for k, v in fields.items()}
                    return StructuredMatch(self.build_record(mapped, repo, source_hint, 'structured'))

        fields = self._heuristic_fields(text, use_headings=not self.is_config_hint(source_hint))
        if any(k in fields for k in ('name', 'display_name', 'version', 'heading')):
            return HeuristicMatch(self.build_record(fields, repo, source_hint, 'heuristic'))

        if problems:
            raise MalformedError(f"No usable metadata in {source_hint or 'input'}", problems)
        raise NoMetadataError(f"No metadata found in {source_hint or 'input'}")
