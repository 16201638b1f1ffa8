from collections import namedtuple
import logging

import numpy as np

from dcpse.cloud import Cloud

logger = logging.getLogger(__name__)

RADIUS = "radius"               ## Every particle within the cutoff radius
AT_LEAST_N = "at_least_n"       ## Grow the cutoff radius until enough particles are found
SUPPORT_MODES = (RADIUS, AT_LEAST_N)

## The neighbourhood of a reference particle. The keys include the reference particle itself
Support = namedtuple('Support', ['reference_key', 'keys'])


class SupportBuilder(object):
    """ Finds the supports (local neighbourhoods) of the particles of a cloud """

    def __init__(self, cloud:Cloud, rcut:float):
        """
        Args:
            cloud (Cloud): The cloud of particles, ghosts included
            rcut (float): The default cutoff radius
        """
        self.cloud = cloud
        self.rcut = rcut

    def get_support(self, key:int, required_size:int, mode:str=RADIUS, rcut:float=None):
        """Finds the support of a particle

        Args:
            key (int): The key of the reference particle
            required_size (int): The number of particles (reference included) to find in AT_LEAST_N mode. Ignored in RADIUS mode.
            mode (str, optional): Either RADIUS or AT_LEAST_N. Defaults to RADIUS.
            rcut (float, optional): The cutoff radius to use instead of the default one. Defaults to None.

        Raises:
            ValueError: When the mode is unknown

        Returns:
            Support: The reference key and the keys of its neighbours, sorted by distance (ties by key)
        """
        if mode not in SUPPORT_MODES:
            raise ValueError("Unknown support mode: %s. Use one of %s" % (mode, SUPPORT_MODES))
        rcut = self.rcut if rcut is None else rcut

        x = self.cloud.get_pos(key)
        keys, _ = self.cloud.query_radius(x, rcut)

        if mode == AT_LEAST_N and keys.shape[0] < required_size:
            _, dists = self.cloud.query_nearest(x, required_size)
            radius = dists[-1] * (1. + 1e-10) + 1e-14       ## Keep the particles tied with the last one
            keys, _ = self.cloud.query_radius(x, radius)

        ## The reference particle is always first, even when another particle sits at the same position
        keys = np.concatenate(([key], keys[keys != key]))
        logger.debug("Support of particle %d holds %d particles", key, keys.shape[0])

        return Support(key, keys)
