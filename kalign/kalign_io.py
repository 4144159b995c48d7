"""
KALIGN Snapshot Store — Iteration-Indexed Alignment Parameter Files
===================================================================

One JSON document per file, holding any number of numbered iterations:

    {
      "format": 1,
      "iterations": {
        "1": [ {"alignable_id": 3, "name": "Telescope/Plane2",
                "kind": "rigid_body", "parameters": [...],
                "covariance": [[...], ...]}, ... ],
        "2": [ ... ]
      }
    }

Floats are written with their shortest round-trip representation, so a
record read back equals the written values exactly.

Author: KALIGN developers
"""

from __future__ import annotations

import json
import logging
import os
import numpy as np
from enum import IntEnum
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from .kalign_geometry import Alignable
from .kalign_parameters import AlignmentParameters, ParameterKind, PARAMETER_CLASSES

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1


class IOStatus(IntEnum):
    """Status codes of the snapshot store."""
    OK = 0
    ITERATION_EXISTS = -1
    NOT_FOUND = 1


class AlignmentIO:
    """Read and write alignment parameters by iteration number."""

    def __init__(self):
        self.last_written_iteration: Optional[int] = None

    def _load(self, path: str) -> Optional[Dict]:
        p = Path(path)
        if not p.exists():
            return None
        with open(p, 'r') as f:
            data = json.load(f)
        if not isinstance(data, dict) or 'iterations' not in data:
            raise ValueError(f"{path} is not an alignment parameter file")
        return data

    def iterations(self, path: str) -> List[int]:
        data = self._load(path)
        if data is None:
            return []
        return sorted(int(k) for k in data['iterations'])

    def read_parameters(self, alignables: Sequence[Alignable], path: str,
                        iteration: int) -> Tuple[List[AlignmentParameters], int]:
        """Stored parameters of ``alignables`` at ``iteration``.

        Returns:
            ``(records, status)``; status is ``IOStatus.NOT_FOUND`` when the
            file or the iteration does not exist.
        """
        data = self._load(path)
        if data is None:
            return [], IOStatus.NOT_FOUND
        block = data['iterations'].get(str(iteration))
        if block is None:
            return [], IOStatus.NOT_FOUND

        by_id = {ali.alignable_id: ali for ali in alignables}
        records = []
        for rec in block:
            ali = by_id.get(int(rec['alignable_id']))
            if ali is None:
                continue
            cls = PARAMETER_CLASSES[ParameterKind(rec['kind'])]
            records.append(cls(ali, rec['parameters'], np.array(rec['covariance'])))
        return records, IOStatus.OK

    def write_parameters(self, alignables: Sequence[Alignable], path: str,
                         iteration: int = 1, valid_check: bool = False) -> int:
        """Write the current parameters of ``alignables``.

        Args:
            iteration: Target iteration; ``-1`` means one above the highest
                stored iteration.
            valid_check: Only write modules whose parameters received at
                least one update.

        Returns:
            ``IOStatus.OK``, or ``IOStatus.ITERATION_EXISTS`` if the target
            iteration is already present (nothing is written).
        """
        data = self._load(path) or {'format': FORMAT_VERSION, 'iterations': {}}
        stored = data['iterations']
        if iteration == -1:
            iteration = max((int(k) for k in stored), default=0) + 1
        elif str(iteration) in stored:
            return IOStatus.ITERATION_EXISTS

        records = []
        for ali in alignables:
            params = ali.alignment_parameters
            if params is None:
                continue
            if valid_check:
                uv = params.kalman_user_variables()
                if uv is None or uv.n_updates == 0:
                    continue
            records.append({
                'alignable_id': ali.alignable_id,
                'name': ali.name,
                'kind': params.kind.value,
                'parameters': params.parameters.tolist(),
                'covariance': params.covariance.tolist(),
            })
        stored[str(iteration)] = records

        p = Path(path)
        p.parent.mkdir(parents=True, exist_ok=True)
        tmp = p.with_name(p.name + '.tmp')
        with open(tmp, 'w') as f:
            json.dump(data, f, indent=1)
        os.replace(tmp, p)
        self.last_written_iteration = iteration
        logger.info("Wrote %d parameter records to %s, iteration %d",
                    len(records), path, iteration)
        return IOStatus.OK
