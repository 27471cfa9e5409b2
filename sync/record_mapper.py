"""Mapping of raw portal JSON into external records."""
import logging
import re
from typing import Any, Dict, List, Optional
from urllib.parse import urlsplit

from bs4 import BeautifulSoup

from sync.models import CrossReference, ExternalRecord

logger = logging.getLogger(__name__)


PROJECT_CROSS_REFERENCES: List[CrossReference] = []

WEBSITE_CROSS_REFERENCES = [
    CrossReference(
        source_field='owner_role',
        target_field='owner_id',
        table='admins',
        insert_only=True
    ),
]

TICKET_CROSS_REFERENCES = [
    CrossReference(
        source_field='operator_portal_id',
        target_field='operator_user_id',
        table='operators'
    ),
    CrossReference(
        source_field='manager_portal_id',
        target_field='manager_user_id',
        table='operators'
    ),
    CrossReference(
        source_field='website_portal_id',
        target_field='website_id',
        table='websites'
    ),
    CrossReference(
        source_field='author_portal_id',
        target_field='client_id',
        table='clients'
    ),
]


class PortalRecordMapper:
    """Converts portal posts into ExternalRecord objects."""

    MAX_TITLE_LENGTH = 500

    PROJECT_DEFAULTS = {
        'sync_enabled': True,
        'project_type': 'vývoj',
        'project_category': 'klientský',
        'status': 'aktivní',
    }

    def __init__(self, portal_base_url: str = ''):
        """
        Initialize the mapper.

        Args:
            portal_base_url: Site root used to build project import URLs
        """
        self.portal_base_url = portal_base_url.split('/wp-json')[0].rstrip('/')

    def map_projects(self, posts: List[Dict[str, Any]]) -> List[ExternalRecord]:
        """
        Map project posts, dropping phases (posts with a parent).

        Args:
            posts: Raw project posts from the portal

        Returns:
            List of ExternalRecord objects for top-level projects
        """
        main_projects = [
            post for post in posts
            if not (isinstance(post, dict) and post.get('parent'))
        ]
        logger.info(
            f"Filtered to {len(main_projects)} main projects, excluding "
            f"{len(posts) - len(main_projects)} phases"
        )
        return self._map_all(main_projects, self._map_project)

    def map_websites(self, sites: List[Dict[str, Any]]) -> List[ExternalRecord]:
        """Map website posts, keyed by normalized URL."""
        return self._map_all(sites, self._map_website)

    def map_tickets(self, tickets: List[Dict[str, Any]]) -> List[ExternalRecord]:
        """Map support ticket posts."""
        return self._map_all(tickets, self._map_ticket)

    def _map_all(self, items, map_one) -> List[ExternalRecord]:
        records = []

        for item in items:
            if not isinstance(item, dict):
                logger.warning(f"Skipping portal item that is not an object: {item!r}")
                continue
            try:
                record = map_one(item)
                if record:
                    records.append(record)
            except Exception as e:
                logger.warning(f"Failed to map portal item {item.get('id')}: {e}")
                continue

        logger.info(f"Mapped {len(records)} records out of {len(items)} portal items")
        return records

    def _map_project(self, post: Dict[str, Any]) -> Optional[ExternalRecord]:
        if not post.get('id'):
            logger.warning("Project post missing required field: id")
            return None

        external_id = str(post['id'])
        acf = post.get('acf') or {}
        name = (
            (acf.get('nazev_projektu') or '').strip()
            or strip_html(_rendered(post.get('title')))
            or f"Project {external_id}"
        )

        fields = {
            'name': name[:self.MAX_TITLE_LENGTH],
            'import_source_url': f"{self.portal_base_url}/wp-json/wp/v2/projekt/{external_id}",
        }
        return ExternalRecord(
            external_id=external_id,
            fields=fields,
            insert_fields=dict(self.PROJECT_DEFAULTS)
        )

    def _map_website(self, site: Dict[str, Any]) -> Optional[ExternalRecord]:
        acf = site.get('acf') or {}
        url = normalize_url(acf.get('url_adresa_webu'))
        if not url:
            return None

        name = (
            strip_html(_rendered(site.get('title')))
            or (acf.get('nazev_webu') or '').strip()
            or urlsplit(url).netloc
        )

        return ExternalRecord(
            external_id=url,
            fields={
                'url': url,
                'name': name[:self.MAX_TITLE_LENGTH],
            },
            insert_fields={'owner_role': 'admin'}
        )

    def _map_ticket(self, ticket: Dict[str, Any]) -> Optional[ExternalRecord]:
        if not ticket.get('id'):
            logger.warning("Ticket missing required field: id")
            return None

        acf = ticket.get('acf') or {}
        website = acf.get('web')

        fields = {
            'title': strip_html(_rendered(ticket.get('title')))[:self.MAX_TITLE_LENGTH],
            'slug': ticket.get('slug') or '',
            'description': acf.get('text_pozadavku') or '',
            'portal_link': ticket.get('link') or '',
            'status': strip_html(acf.get('stav')),
            'priority': strip_html(acf.get('priorita')),
            'is_complaint': acf.get('reklamace') == 'Ano',
            'hourly_rate': acf.get('sazba') or None,
            'estimated_hours': acf.get('odhad') or '',
            'actual_time': acf.get('realny_cas') or '',
            'manager_time': acf.get('cas_managera') or '',
            'approved_time': acf.get('uznany_cas') or '',
            'estimated_completion': parse_acf_date(acf.get('odhadovane_dokonceni')),
            'website_portal_id': parse_portal_id(website),
            'author_portal_id': parse_portal_id(ticket.get('author')),
            'operator_portal_id': parse_portal_id(acf.get('operator_podpory')),
            'manager_portal_id': parse_portal_id(acf.get('manager_pozadavku')),
            'screenshot_url': _attachment_url(acf.get('screenshot')),
            'attachment_url': _attachment_url(acf.get('soubory')),
            'portal_created_at': ticket.get('date'),
            'portal_modified_at': ticket.get('modified'),
        }
        return ExternalRecord(external_id=str(ticket['id']), fields=fields)


def strip_html(value: Any) -> str:
    """Text content of a rendered WordPress field."""
    if not isinstance(value, str) or not value:
        return ''
    return BeautifulSoup(value, 'html.parser').get_text().strip()


def parse_acf_date(value: Any) -> Optional[str]:
    """
    Convert an ACF date (YYYYMMDD) to ISO 8601.

    Args:
        value: Raw ACF value

    Returns:
        YYYY-MM-DD string or None if the value is not eight digits
    """
    if not isinstance(value, str) or not re.fullmatch(r'\d{8}', value):
        return None
    return f"{value[0:4]}-{value[4:6]}-{value[6:8]}"


def parse_portal_id(value: Any) -> Optional[int]:
    """Portal post/user id, or None for empty, zero and non-numeric values."""
    if value is None or isinstance(value, bool) or value == '':
        return None
    try:
        number = int(value)
    except (TypeError, ValueError):
        return None
    return number or None


def normalize_url(value: Any) -> Optional[str]:
    """
    Normalize a website URL for matching.

    Args:
        value: URL as entered in the portal, scheme optional

    Returns:
        Lowercased URL with scheme and without trailing slash, or None
    """
    if not isinstance(value, str) or not value.strip():
        return None
    url = value.strip()
    if not url.lower().startswith(('http://', 'https://')):
        url = 'https://' + url
    return url.rstrip('/').lower()


def _rendered(value: Any) -> str:
    if isinstance(value, dict):
        return value.get('rendered') or ''
    return value or ''


def _attachment_url(value: Any) -> Optional[str]:
    # ACF returns false for an empty file field
    if isinstance(value, dict):
        return value.get('url') or None
    return None
