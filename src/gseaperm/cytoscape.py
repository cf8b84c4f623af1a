"""
Enrichment Map construction in a running Cytoscape, through CyREST.

Network building, clustering and annotation are done by the EnrichmentMap,
clusterMaker2 and AutoAnnotate apps; this client only issues their
commands and passes the network SUID between them.
"""

import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from gseaperm.errors import CytoscapeError, DependencyError

logger = logging.getLogger(__name__)

SIMILARITY_COLUMN = 'EnrichmentMap::similarity_coefficient'
LABEL_COLUMN = 'EnrichmentMap::GS_DESCR'


def configure_session(base_url: str) -> requests.Session:
    session = requests.Session()
    retries = Retry(
        total=3,
        backoff_factor=1.0,
        status_forcelist=(500, 502, 503, 504),
        allowed_methods=("GET",),
    )
    adapter = HTTPAdapter(max_retries=retries)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    session.headers.update({"Content-Type": "application/json", "Accept": "application/json"})
    return session


class CytoscapeClient:
    """Thin CyREST client keyed by network SUIDs."""

    def __init__(
        self,
        base_url: str = 'http://localhost:1234/v1',
        timeout: float = 30,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = session or configure_session(self.base_url)

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        kwargs.setdefault('timeout', self.timeout)
        url = self._url(path)
        try:
            response = self.session.request(method, url, **kwargs)
        except requests.exceptions.ConnectionError:
            raise DependencyError(
                f"Cytoscape is not reachable at {self.base_url}. Start Cytoscape with the "
                "EnrichmentMap, clusterMaker2 and AutoAnnotate apps installed, or set cytoscape.run = false."
            )
        except requests.exceptions.Timeout:
            raise CytoscapeError(f"Cytoscape request timed out: {method} {url}")

        if not response.ok:
            raise CytoscapeError(
                f"Cytoscape request failed: {method} {url}",
                returncode=response.status_code,
                stderr=response.text[:2000],
            )
        return response

    def ping(self) -> Dict[str, Any]:
        """Version information of the running Cytoscape."""
        info = self._request('GET', '').json()
        logger.info(f"Connected to Cytoscape {info.get('cytoscapeVersion', '?')} (API {info.get('apiVersion', '?')})")
        return info

    def command(self, namespace: str, command: str, **params) -> Dict[str, Any]:
        """
        Run a Cytoscape command through the JSON commands API.

        Returns:
            The 'data' member of the response

        Raises:
            CytoscapeError: If the response lists errors
        """
        response = self._request('POST', f"commands/{namespace}/{command}", json=params)
        payload = response.json() if response.content else {}
        errors = payload.get('errors') or []
        if errors:
            messages = '; '.join(str(e.get('message', e)) if isinstance(e, dict) else str(e) for e in errors)
            raise CytoscapeError(f"Cytoscape command '{namespace} {command}' failed: {messages}")
        return payload.get('data') or {}

    def current_network(self) -> int:
        data = self._request('GET', 'networks/currentNetwork').json().get('data', {})
        if 'networkSUID' not in data:
            raise CytoscapeError("Cytoscape has no current network")
        return int(data['networkSUID'])

    def build_enrichment_map(
        self,
        gmt_file: Union[str, Path],
        positive_report: Union[str, Path],
        negative_report: Union[str, Path],
        ranks_file: Optional[Union[str, Path]] = None,
        expression_file: Optional[Union[str, Path]] = None,
        class_file: Optional[Union[str, Path]] = None,
        phenotypes: Optional[tuple] = None,
        pvalue: float = 1.0,
        qvalue: float = 0.05,
        similarity_cutoff: float = 0.375,
        coefficients: str = 'COMBINED',
        combined_constant: float = 0.5,
    ) -> int:
        """
        Build an Enrichment Map from one GSEA run.

        Returns:
            SUID of the new network
        """
        params = {
            'analysisType': 'gsea',
            'gmtFile': str(Path(gmt_file).resolve()),
            'enrichmentsDataset1': str(Path(positive_report).resolve()),
            'enrichments2Dataset1': str(Path(negative_report).resolve()),
            'pvalue': pvalue,
            'qvalue': qvalue,
            'similaritycutoff': similarity_cutoff,
            'coefficients': coefficients,
            'combinedConstant': combined_constant,
        }
        if ranks_file:
            params['ranksDataset1'] = str(Path(ranks_file).resolve())
        if expression_file:
            params['expressionDataset1'] = str(Path(expression_file).resolve())
        if class_file:
            params['classDataset1'] = str(Path(class_file).resolve())
        if phenotypes:
            params['phenotype1Dataset1'], params['phenotype2Dataset1'] = phenotypes

        data = self.command('enrichmentmap', 'build', **params)

        suid = None
        if isinstance(data, dict):
            networks = data.get('networks') or []
            suid = networks[0] if networks else data.get('SUID')
        if suid is None:
            suid = self.current_network()

        logger.info(f"Built Enrichment Map network {suid}")
        return int(suid)

    def cluster_network(
        self,
        suid: int,
        algorithm: str = 'MCL',
        attribute: str = SIMILARITY_COLUMN,
    ) -> Dict[str, Any]:
        """Cluster the network's nodes with clusterMaker2."""
        return self.command('cluster', algorithm.lower(), network=f"SUID:{suid}", attribute=attribute)

    def annotate_clusters(
        self,
        suid: int,
        algorithm: str = 'MCL',
        label_column: str = LABEL_COLUMN,
        max_words: int = 3,
        edge_weight_column: str = SIMILARITY_COLUMN,
    ) -> Dict[str, Any]:
        """Label clusters with AutoAnnotate."""
        return self.command(
            'autoannotate', 'annotate-clusterBoosted',
            network=f"SUID:{suid}",
            clusterAlgorithm=algorithm,
            labelColumn=label_column,
            maxWords=max_words,
            edgeWeightColumn=edge_weight_column,
        )

    def apply_layout(self, suid: int, algorithm: str = 'force-directed') -> None:
        self._request('GET', f"apply/layouts/{algorithm}/{suid}")
        self._request('GET', f"apply/fit/{suid}")

    def export_image(self, suid: int, path: Union[str, Path], height: int = 2000) -> Path:
        """Save a PNG of the network's first view."""
        path = Path(path)
        response = self._request(
            'GET', f"networks/{suid}/views/first.png",
            params={'h': height},
            headers={'Accept': 'image/png'},
        )
        path.write_bytes(response.content)
        logger.info(f"Saved network image to {path}")
        return path
