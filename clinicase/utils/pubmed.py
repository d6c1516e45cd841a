import re
from dataclasses import dataclass, field

import requests
from loguru import logger

from clinicase.core.errors import UpstreamError, UpstreamTimeoutError
from clinicase.utils.env_cfg import PubMedConfig, load_pubmed_env

_STRIP = re.compile(r"[?¿!¡]")


@dataclass
class PubMedClient:
    """
    Literature search over NCBI E-utilities (``esearch`` then ``esummary``).
    """

    config: PubMedConfig = field(default_factory=load_pubmed_env)

    def _get(self, endpoint: str, params: dict[str, str | int]) -> dict:
        if self.config.api_key:
            params = {**params, "api_key": self.config.api_key}
        try:
            resp = requests.get(
                f"{self.config.base_url}/{endpoint}",
                params=params,
                timeout=self.config.timeout,
            )
            resp.raise_for_status()
            body = resp.json()
        except requests.Timeout as e:
            logger.warning("PubMed {} timed out: {}", endpoint, e)
            raise UpstreamTimeoutError(f"PubMed {endpoint} timed out") from e
        except (requests.RequestException, ValueError) as e:
            logger.warning("PubMed {} failed: {}", endpoint, e)
            raise UpstreamError(f"PubMed {endpoint} failed: {e}") from e
        if not isinstance(body, dict):
            logger.warning("PubMed {} returned {}", endpoint, type(body).__name__)
            raise UpstreamError(f"PubMed {endpoint} returned a non-object body")
        return body

    def search(self, query: str) -> str:
        """
        Search PubMed and summarize the top citations.

        Args:
            query (str): Free-text query; ``?¿!¡`` are removed.

        Returns:
            str: One ``Title. Journal. Year. PMID: n`` line per citation, or an empty string.

        Raises:
            UpstreamError: If either request failed.
        """
        term = " ".join(_STRIP.sub(" ", query or "").split())
        if not term:
            return ""
        found = self._get(
            "esearch.fcgi",
            {"db": "pubmed", "term": term, "retmode": "json", "retmax": self.config.retmax},
        )
        ids = [str(i) for i in _section(found, "esearchresult").get("idlist") or []]
        ids = ids[: self.config.retmax]
        if not ids:
            return ""
        summary = _section(
            self._get("esummary.fcgi", {"db": "pubmed", "id": ",".join(ids), "retmode": "json"}),
            "result",
        )

        lines = []
        for pmid in summary.get("uids", ids):
            item = _section(summary, pmid)
            title = str(item.get("title", "")).strip().rstrip(".")
            journal = str(item.get("source") or item.get("fulljournalname") or "").strip()
            year = str(item.get("pubdate", "")).strip()[:4]
            parts = [p for p in (title, journal, year) if p]
            lines.append(". ".join(parts + [f"PMID: {pmid}"]))
        return "\n".join(lines)


def _section(body: dict, key: str) -> dict:
    value = body.get(key)
    return value if isinstance(value, dict) else {}
