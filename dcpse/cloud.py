import itertools
import logging

import numpy as np
import jax
import jax.numpy as jnp
from sklearn.neighbors import BallTree

from dcpse.utils import distance, plot

logger = logging.getLogger(__name__)


class Cloud(object):
    """ A class to store the cloud of particles: positions, ghosts, named fields and the neighbour search structure """

    def __init__(self, positions, ghost_positions=None, ghost_sources=None):
        """Initializes the cloud of particles

        Args:
            positions (Float[Array, "nb_local_nodes dim"]): Positions of the particles owned by this cloud (the domain particles)
            ghost_positions (Float[Array, "nb_ghost_nodes dim"], optional): Positions of the ghost particles, i.e. copies of particles living elsewhere (periodic images, other ranks). Defaults to None.
            ghost_sources (Int[Array, "nb_ghost_nodes"], optional): For each ghost, the key of the local particle whose field values it mirrors. Defaults to None, in which case ghost fields must be set explicitly.
        """
        self.epoch = 0
        self.fields = {}
        self._set_positions(positions, ghost_positions, ghost_sources)

    def _set_positions(self, positions, ghost_positions, ghost_sources):
        positions = jnp.asarray(positions, dtype=float)
        if positions.ndim == 1:     ## A 1D cloud given as a flat array
            positions = positions[:, None]

        if ghost_positions is None:
            ghost_positions = jnp.zeros((0, positions.shape[1]))
        ghost_positions = jnp.asarray(ghost_positions, dtype=float)
        if ghost_positions.ndim == 1:
            ghost_positions = ghost_positions[:, None]

        assert ghost_positions.shape[1] == positions.shape[1], "Ghosts and particles must have the same dimension"
        if ghost_sources is not None:
            ghost_sources = np.asarray(ghost_sources, dtype=int)
            assert ghost_sources.shape[0] == ghost_positions.shape[0], "One source is needed per ghost particle"
            assert np.all((ghost_sources >= 0) & (ghost_sources < positions.shape[0])), "Ghost sources must be local particles"

        self.N = positions.shape[0]
        self.N_ghost = ghost_positions.shape[0]
        self.N_total = self.N + self.N_ghost
        self.dim = positions.shape[1]
        self.positions = jnp.concatenate((positions, ghost_positions), axis=0)
        self.ghost_sources = ghost_sources

        ## Use BallTree for fast neighbour search over local and ghost particles
        self._coords = np.asarray(self.positions)
        self.ball_tree = BallTree(self._coords, leaf_size=40, metric='euclidean')

    @property
    def local_positions(self):
        return self.positions[:self.N]

    def domain_keys(self):
        """ Iterates over the keys of the locally owned particles """
        return iter(range(self.N))

    def get_pos(self, key):
        return self.positions[key]

    def origin_key(self, key):
        """Maps a key to the local particle holding the original data

        Args:
            key (int): A local or ghost key

        Returns:
            int: The key itself for local particles, the mirrored local particle for ghosts (when known)
        """
        if key < self.N or self.ghost_sources is None:
            return key
        return int(self.ghost_sources[key-self.N])

    def average_spacing(self):
        """ Computes the average distance between each particle and its nearest neighbour

        Returns:
            float: the mean spacing between particles
        """
        if self.N_total < 2:
            return 0.
        _, neighbours = self.ball_tree.query(self._coords[:self.N], k=2)
        spacings = [distance(self.positions[i], self.positions[j]) for i, j in enumerate(neighbours[:, 1])]
        return jnp.mean(jnp.array(spacings))

    def _sorted(self, keys, dists):
        """ Orders the results of a neighbour query by distance, then by key """
        keys = np.asarray(keys, dtype=int)
        dists = np.asarray(dists)
        order = np.lexsort((keys, dists))
        return keys[order], dists[order]

    def query_radius(self, x, r):
        """Finds all particles (local and ghost) within a distance r from x

        Args:
            x (Float[Array, "dim"]): The query position
            r (float): The cutoff radius

        Returns:
            tuple(Int[Array, "nb_found"], Float[Array, "nb_found"]): The keys and their distances to x, sorted by distance then key
        """
        x = np.asarray(x, dtype=float).reshape(1, self.dim)
        keys, dists = self.ball_tree.query_radius(x, r=r, return_distance=True)
        return self._sorted(keys[0], dists[0])

    def query_nearest(self, x, k):
        """ Finds the k nearest particles (local and ghost) to x, sorted by distance then key """
        x = np.asarray(x, dtype=float).reshape(1, self.dim)
        k = min(k, self.N_total)
        dists, keys = self.ball_tree.query(x, k=k)
        return self._sorted(keys[0], dists[0])


    def add_field(self, name, values=0.):
        """Adds (or overwrites) a named field on the cloud

        Args:
            name (str): The name of the field
            values (callable, float, or Float[Array, "nb_nodes ..."]): Either a function of the position (evaluated on local particles and mirrored to the ghosts when they have sources), a constant, or the values on the local (or local and ghost) particles. Defaults to 0.

        Returns:
            Float[Array, "nb_total_nodes ..."]: The stored values, ghosts included
        """
        if callable(values):
            if self.ghost_sources is not None:     ## Ghosts mirror their sources
                values = jax.vmap(values)(self.local_positions)
            else:
                values = jax.vmap(values)(self.positions)
        values = jnp.asarray(values, dtype=float)
        if values.ndim == 0:
            values = jnp.full((self.N_total,), values)

        self.fields[name] = self.extend_to_ghosts(values)
        return self.fields[name]

    def set_field(self, name, values):
        """ Overwrites the values of an existing field """
        if name not in self.fields:
            raise KeyError("Unknown field: %s" % name)
        return self.add_field(name, values)

    def field(self, name):
        if name not in self.fields:
            raise KeyError("Unknown field: %s" % name)
        return self.fields[name]

    def extend_to_ghosts(self, values):
        """Makes sure a field has values on the ghost particles

        Args:
            values (Float[Array, "nb_nodes ..."]): Values over the local particles, or over local and ghost particles

        Raises:
            ValueError: When the number of values matches neither the local nor the total number of particles

        Returns:
            Float[Array, "nb_total_nodes ..."]: The values on local and ghost particles
        """
        values = jnp.asarray(values)
        if values.shape[0] == self.N_total:
            return values
        if values.shape[0] != self.N:
            raise ValueError("Field has %d values, expected %d or %d" % (values.shape[0], self.N, self.N_total))

        if self.ghost_sources is not None:
            ghost_values = values[jnp.asarray(self.ghost_sources)]
        else:
            ghost_values = jnp.zeros((self.N_ghost,)+values.shape[1:], dtype=values.dtype)
        return jnp.concatenate((values, ghost_values), axis=0)

    def ghost_get(self, name=None):
        """Refreshes the ghost values of one (or every) field from their source particles

        Args:
            name (str, optional): The field to refresh. Defaults to None to refresh all fields.
        """
        if self.ghost_sources is None or self.N_ghost == 0:
            return
        names = [name] if name is not None else list(self.fields.keys())
        for n in names:
            self.fields[n] = self.extend_to_ghosts(self.fields[n][:self.N])


    def map(self, positions, ghost_positions=None, ghost_sources=None):
        """Moves or redistributes the particles. Any operator built on this cloud must be updated afterwards

        Args:
            positions (Float[Array, "nb_local_nodes dim"]): The new positions of the local particles
            ghost_positions (Float[Array, "nb_ghost_nodes dim"], optional): The new ghost positions. Defaults to None.
            ghost_sources (Int[Array, "nb_ghost_nodes"], optional): The new ghost sources. Defaults to None.
        """
        old_N = self.N
        self._set_positions(positions, ghost_positions, ghost_sources)

        for name, values in list(self.fields.items()):
            if self.N == old_N:
                self.fields[name] = self.extend_to_ghosts(values[:self.N])
            else:
                logger.warning("Dropping field '%s' after the number of particles changed", name)
                del self.fields[name]

        self.epoch += 1
        logger.debug("Cloud remapped, epoch is now %d", self.epoch)


    def visualize_cloud(self, ax=None, title="Cloud", xlabel=r'$x$', ylabel=r'$y$', figsize=(5.5,5), **kwargs):
        import matplotlib.pyplot as plt
        """Visualizes the local (white) and ghost (red) particles of a 2D cloud"""

        if ax is None:
            fig = plt.figure(figsize=figsize)
            ax = fig.add_subplot(1, 1, 1)

        coords = np.asarray(self.positions)
        if self.dim == 1:
            coords = np.concatenate((coords, np.zeros_like(coords)), axis=-1)

        ax.scatter(x=coords[:self.N, 0], y=coords[:self.N, 1], c="w", label="local", **kwargs)
        if self.N_ghost > 0:
            ax.scatter(x=coords[self.N:, 0], y=coords[self.N:, 1], c="r", label="ghost", **kwargs)

        if xlabel:
            ax.set_xlabel(xlabel)
        if ylabel:
            ax.set_ylabel(ylabel)
        ax.set_title(title)
        ax.legend(bbox_to_anchor=(1.0, 0.5), loc='center left', prop={'size': 8})
        plt.tight_layout()

        return ax


    def visualize_field(self, field, title="Field", xlabel=r'$x$', ylabel=r'$y$', levels=50, colorbar=True, ax=None, figsize=(6,5), **kwargs):
        import matplotlib.pyplot as plt
        """Visualizes a field (its name or its values) on the local particles"""

        if isinstance(field, str):
            field = self.field(field)
        field = np.asarray(field)[:self.N]
        if field.ndim > 1:    ## If field has superfluous dimensions, e.g. (N, 1)
            field = field[:, 0, ...]

        coords = np.asarray(self.local_positions)

        if self.dim == 1:
            order = np.argsort(coords[:, 0])
            ax = plot(coords[order, 0], field[order], ax=ax, figsize=figsize, x_label=xlabel, y_label=ylabel, title=title, **kwargs)
            return ax, ax.lines[-1]

        if ax is None:
            fig = plt.figure(figsize=figsize)
            ax = fig.add_subplot(1, 1, 1)

        img = ax.tricontourf(coords[:, 0], coords[:, 1], field, levels=levels, **kwargs)
        if colorbar == True:
            plt.sca(ax)
            plt.colorbar(img)

        ax.set_title(title)
        if xlabel:
            ax.set_xlabel(xlabel)
        if ylabel:
            ax.set_ylabel(ylabel)
        plt.tight_layout()

        return ax, img




class GridCloud(Cloud):
    """ A class to store a uniform (optionally jittered, optionally periodic) grid of particles in 1, 2 or 3 dimensions """

    def __init__(self, shape, spacing=0.1, origin=0., periodic=False, ghost_width=0, noise_key=None):
        """Initializes a grid cloud

        Args:
            shape (int or tuple[int]): Number of particles along each direction
            spacing (float, optional): Distance between two consecutive particles along an axis. Defaults to 0.1.
            origin (float or tuple[float], optional): Position of the first particle. Defaults to 0.
            periodic (bool, optional): Whether the domain is periodic in every direction. Defaults to False.
            ghost_width (int, optional): Width of the periodic ghost layer, in number of spacings. Defaults to 0.
            noise_key (PRNGKey, optional): An optional noise key to scramble the particles' locations. Defaults to None.
        """
        if isinstance(shape, int):
            shape = (shape,)
        self.shape = tuple(int(n) for n in shape)
        self.spacing = float(spacing)
        self.periodic = periodic
        self.ghost_width = int(ghost_width)

        dim = len(self.shape)
        self.origin = jnp.broadcast_to(jnp.asarray(origin, dtype=float), (dim,))
        self.lengths = jnp.array(self.shape, dtype=float) * self.spacing   ## Period along each axis

        positions = self.define_node_coordinates(noise_key)
        ghost_positions, ghost_sources = self.define_periodic_ghosts(positions)

        super().__init__(positions, ghost_positions, ghost_sources)

        self.global_indices = jnp.arange(self.N).reshape(self.shape)

    def define_node_coordinates(self, noise_key):
        """ Calculates the coordinates of the nodes, the last axis varying fastest. Optionally adds noise to the coordinates """
        axes = [self.origin[d] + self.spacing*jnp.arange(n) for d, n in enumerate(self.shape)]
        grids = jnp.meshgrid(*axes, indexing="ij")
        positions = jnp.stack([g.flatten() for g in grids], axis=-1)

        if noise_key is not None:
            delta_noise = self.spacing / 4.     ## To make sure nodes don't go into each other
            positions = positions + jax.random.uniform(noise_key, positions.shape, minval=-delta_noise, maxval=delta_noise)

        return positions

    def define_periodic_ghosts(self, positions):
        """Makes the periodic images of the particles lying within ghost_width spacings of the boundaries

        Returns:
            tuple(Float[Array, "nb_ghost_nodes dim"], Int[Array, "nb_ghost_nodes"]): The ghost positions and the keys of their source particles
        """
        dim = len(self.shape)
        if not self.periodic or self.ghost_width <= 0:
            return None, None

        low = self.origin - (self.ghost_width + 0.5) * self.spacing
        high = self.origin + self.lengths + (self.ghost_width - 0.5) * self.spacing

        ghost_positions = []
        ghost_sources = []
        for shift in itertools.product((-1, 0, 1), repeat=dim):
            if not any(shift):
                continue
            shifted = positions + jnp.array(shift, dtype=float) * self.lengths
            inside = jnp.all((shifted >= low) & (shifted <= high), axis=-1)
            keys = np.nonzero(np.asarray(inside))[0]
            ghost_positions.append(shifted[keys])
            ghost_sources.append(keys)

        return jnp.concatenate(ghost_positions, axis=0), np.concatenate(ghost_sources)

    def map(self, positions, ghost_positions=None, ghost_sources=None):
        """ Moves the particles. Periodic ghosts are regenerated from the new positions when none are given """
        if ghost_positions is None and self.periodic:
            positions = jnp.asarray(positions, dtype=float).reshape(-1, len(self.shape))
            ghost_positions, ghost_sources = self.define_periodic_ghosts(positions)
        super().map(positions, ghost_positions, ghost_sources)
