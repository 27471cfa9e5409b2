"""HTTP client for the agency's WordPress portal REST API."""
import logging
import time
from typing import Any, Dict, List, Optional

import requests

logger = logging.getLogger(__name__)


class PortalError(RuntimeError):
    """Raised when the portal returns an unusable payload."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class PortalClient:
    """Fetches projects, websites and support tickets from the portal."""

    USER_AGENT = 'portal-sync-lambda/1.0'
    PROJECTS_PER_PAGE = 100
    TICKETS_PER_PAGE = 20
    TICKET_FIELDS = 'id,title,slug,link,date,modified,author,acf'
    MAX_PAGES = 500

    def __init__(self, timeout: int = 30, max_retries: int = 3, base_delay: int = 1):
        """
        Initialize the portal client.

        Args:
            timeout: HTTP request timeout in seconds (default: 30)
            max_retries: Attempts per request before giving up
            base_delay: Initial backoff delay in seconds
        """
        self.timeout = timeout
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.session = requests.Session()
        self.session.headers.update({
            'User-Agent': self.USER_AGENT,
            'Accept': 'application/json',
        })

    def fetch_projects(self, url: str) -> List[Dict[str, Any]]:
        """
        Fetch all project posts, phases included.

        Pagination stops at an empty or short page, or at HTTP 400 past
        the first page (WordPress answers 400 for a page beyond the last).

        Args:
            url: Project collection endpoint

        Returns:
            List of raw project posts
        """
        logger.info(f"Fetching projects from portal: {url}")
        projects: List[Dict[str, Any]] = []

        for page in range(1, self.MAX_PAGES + 1):
            response = self._get(
                url,
                params={'page': page, 'per_page': self.PROJECTS_PER_PAGE},
                allow_status=(400,) if page > 1 else ()
            )
            if response.status_code == 400:
                logger.info("No more project pages available")
                break

            items = self._json_list(response)
            logger.info(f"Received {len(items)} projects from page {page}")
            projects.extend(items)

            if len(items) < self.PROJECTS_PER_PAGE:
                break

        logger.info(f"Fetched {len(projects)} project posts from portal")
        return projects

    def fetch_websites(self, url: str) -> List[Dict[str, Any]]:
        """Fetch the website list, returned by the portal as a single array."""
        logger.info(f"Fetching websites from portal: {url}")
        websites = self._json_list(self._get(url))
        logger.info(f"Found {len(websites)} websites in portal")
        return websites

    def fetch_tickets(self, url: str, limit: int = 0) -> List[Dict[str, Any]]:
        """
        Fetch support tickets, paging by the X-WP-TotalPages header.

        Args:
            url: Ticket collection endpoint
            limit: Stop after this many tickets (0 means no limit)

        Returns:
            List of raw ticket posts
        """
        logger.info(f"Fetching support tickets from portal: {url}")
        tickets: List[Dict[str, Any]] = []
        page = 1
        total_pages = 1

        while page <= min(total_pages, self.MAX_PAGES):
            response = self._get(
                url,
                params={
                    'per_page': self.TICKETS_PER_PAGE,
                    'page': page,
                    '_fields': self.TICKET_FIELDS,
                },
                allow_status=(400,)
            )
            if response.status_code == 400:
                break

            header = response.headers.get('X-WP-TotalPages')
            if header and header.isdigit():
                total_pages = int(header)

            tickets.extend(self._json_list(response))
            if limit and len(tickets) >= limit:
                tickets = tickets[:limit]
                break
            page += 1

        logger.info(f"Fetched {len(tickets)} support tickets from portal")
        return tickets

    def _get(self, url: str, params: Optional[Dict[str, Any]] = None,
             allow_status=()) -> requests.Response:
        """
        GET with retry and exponential backoff.

        Args:
            url: Request URL
            params: Query parameters
            allow_status: Error status codes returned instead of raised

        Returns:
            Response object

        Raises:
            requests.RequestException: If all retry attempts fail
        """
        for attempt in range(self.max_retries):
            try:
                logger.debug(f"GET {url} {params or ''} (attempt {attempt + 1}/{self.max_retries})")
                response = self.session.get(url, params=params, timeout=self.timeout)
                if response.status_code not in allow_status:
                    response.raise_for_status()
                return response

            except requests.RequestException as e:
                if attempt < self.max_retries - 1:
                    delay = self.base_delay * (2 ** attempt)
                    logger.warning(
                        f"Request failed (attempt {attempt + 1}/{self.max_retries}): {e}. "
                        f"Retrying in {delay} seconds..."
                    )
                    time.sleep(delay)
                else:
                    logger.error(
                        f"All {self.max_retries} retry attempts failed. Last error: {e}"
                    )
                    raise

    @staticmethod
    def _json_list(response: requests.Response) -> List[Dict[str, Any]]:
        try:
            payload = response.json()
        except ValueError as e:
            raise PortalError(f"Invalid JSON from portal: {e}", response.status_code) from e

        if isinstance(payload, dict) and isinstance(payload.get('items'), list):
            payload = payload['items']
        if not isinstance(payload, list):
            raise PortalError('Invalid portal response format', response.status_code)
        return payload
