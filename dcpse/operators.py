import logging

import numpy as np
import jax
import jax.numpy as jnp

import dcpse.config as DCPSE
from dcpse.cloud import Cloud
from dcpse.monomials import MonomialBasis
from dcpse.support import Support, SupportBuilder, RADIUS, SUPPORT_MODES
from dcpse.vandermonde import support_offsets
from dcpse.assembly import assemble_rhs, core_build_kernels
from dcpse.utils import differential_sign, make_field_view, ScalarFieldView, VectorComponentView, KernelRecord, BuildReport

logger = logging.getLogger(__name__)


class StaleCacheError(RuntimeError):
    """ Raised when an operator is applied on a cloud that was remapped after the operator's last update """


class Dcpse(object):
    """A DC-PSE approximation of the differential operator D^alpha on a cloud of particles

    The kernel weights of every local particle are computed once (at construction, then at each
    update) and stored back to back in flat arrays, in the order of the particle supports:
    the weights of particle p live in kernels[kernel_offsets[p]:kernel_offsets[p+1]].
    """

    def __init__(self, cloud:Cloud,
                        signature:tuple,
                        convergence_order:int,
                        rcut:float,
                        support_size_factor:float=1.,
                        support_mode:str=RADIUS,
                        cond_tol:float=None,
                        max_retries:int=None,
                        check_epoch:bool=None):
        """Builds the operator

        Args:
            cloud (Cloud): The particles. Ghost values must be up to date before building
            signature (tuple[int]): The differential signature alpha, e.g. (1, 0) for d/dx in 2D
            convergence_order (int): The convergence order of the approximation
            rcut (float): The cutoff radius of the supports
            support_size_factor (float, optional): Multiple of the basis size to put in each support. Values below 1 switch to the adaptive support size. Defaults to 1.
            support_mode (str, optional): RADIUS or AT_LEAST_N, see SupportBuilder. Defaults to RADIUS.
            cond_tol (float, optional): Max condition number of the Vandermonde matrix in adaptive mode. Defaults to config.COND_TOL.
            max_retries (int, optional): Max number of support doublings per particle in adaptive mode. Defaults to config.MAX_SUPPORT_RETRIES.
            check_epoch (bool, optional): Whether to raise a StaleCacheError when the cloud was remapped since the last update. Defaults to config.CHECK_EPOCH.

        Raises:
            ValueError: When the signature does not match the dimension of the cloud, or the support parameters are invalid
        """
        signature = tuple(int(s) for s in signature)
        if len(signature) != cloud.dim:
            raise ValueError("Signature %s does not match the dimension %d of the cloud" % (signature, cloud.dim))
        if support_mode not in SUPPORT_MODES:
            raise ValueError("Unknown support mode: %s. Use one of %s" % (support_mode, SUPPORT_MODES))
        if support_size_factor <= 0:
            raise ValueError("The support size factor must be strictly positive")
        if rcut < 0:
            raise ValueError("The cutoff radius can't be negative: %s" % rcut)

        self.cloud = cloud
        self.signature = signature
        self.order = sum(signature)
        self.convergence_order = convergence_order
        self.basis = MonomialBasis(signature, convergence_order)
        self.rhs = assemble_rhs(self.basis)
        self.sign = differential_sign(self.order)

        self.rcut = float(rcut)
        self.support_size_factor = support_size_factor
        self.support_mode = support_mode
        self.adaptive = support_size_factor < 1.

        self.cond_tol = DCPSE.COND_TOL if cond_tol is None else cond_tol
        self.max_retries = DCPSE.MAX_SUPPORT_RETRIES if max_retries is None else max_retries
        self.check_epoch = DCPSE.CHECK_EPOCH if check_epoch is None else check_epoch
        self.eps_factor = DCPSE.EPS_FACTOR
        self.fallback_eps = self._fallback_eps()

        self.update()

    def __repr__(self):
        return "Dcpse(signature=%s, convergence_order=%d, nb_monomials=%d, nb_particles=%d)" % (self.signature, self.convergence_order, len(self.basis), self.N)


    def _fallback_eps(self):
        """ Epsilon for supports reduced to the reference particle: half the cutoff, or half the particle spacing without cutoff """
        if self.rcut > 0.:
            return self.rcut/2.
        spacing = float(self.cloud.average_spacing())
        return spacing/2. if spacing > 0. else 1.

    def _build_kernels(self, support):
        """ Kernel weights, epsilon and cond(V) of a support """
        offsets = support_offsets(support, self.cloud)
        return core_build_kernels(offsets, self.basis.exponents, self.basis.max_exponent, self.rhs, self.eps_factor, self.fallback_eps)

    def _grown_cutoff(self, key, rcut, required_size):
        """ Doubles the cutoff radius, making sure it reaches at least the required_size-th nearest particle """
        _, dists = self.cloud.query_nearest(self.cloud.get_pos(key), required_size)
        return max(2.*rcut, float(dists[-1]) * (1. + 1e-10))

    def _adaptive_support(self, builder, key):
        """Doubles the support until the Vandermonde matrix is well conditioned

        In RADIUS mode the cutoff radius grows too, since the required size is not used there.
        The growth stops after max_retries doublings, or once the support holds every particle.
        """
        required_size = len(self.basis)
        rcut = self.rcut

        retries = 0
        while True:
            support = builder.get_support(key, required_size, self.support_mode, rcut)
            kernels, eps, cond = self._build_kernels(support)
            cond = float(cond)

            if cond <= self.cond_tol:
                break
            if retries >= self.max_retries or support.keys.shape[0] >= self.cloud.N_total:
                logger.warning("cond(V) = %.3g is greater than TOL = %.3g for particle %d after %d retries, keeping its %d particles support",
                               cond, self.cond_tol, key, retries, support.keys.shape[0])
                break

            retries += 1
            required_size *= 2
            if self.support_mode == RADIUS:
                rcut = self._grown_cutoff(key, rcut, required_size)
                logger.info("cond(V) = %.3g for particle %d, increasing the cutoff radius to %.3g", cond, key, rcut)
            else:
                logger.info("cond(V) = %.3g for particle %d, increasing the required support size to %d", cond, key, required_size)

        return support, kernels, eps, cond, retries


    def update(self):
        """Recomputes the supports and the kernels of all local particles from scratch

        Must be called after the particles moved or were redistributed (see Cloud.map).
        """
        cloud = self.cloud
        builder = SupportBuilder(cloud, self.rcut)
        required_size = int(len(self.basis) * self.support_size_factor)

        all_eps = []
        all_kernels = []
        all_neighbours = []
        all_conds = []
        all_retries = []
        counts = []

        for key in cloud.domain_keys():
            if self.adaptive:
                support, kernels, eps, cond, retries = self._adaptive_support(builder, key)
            else:
                support = builder.get_support(key, required_size, self.support_mode)
                kernels, eps, cond = self._build_kernels(support)
                retries = 0

            all_eps.append(eps)
            all_kernels.append(kernels)
            all_neighbours.append(support.keys)
            all_conds.append(cond)
            all_retries.append(retries)
            counts.append(support.keys.shape[0])

        ## A single transfer from the device for all condition numbers
        conds = np.asarray(jnp.array(all_conds)) if cloud.N > 0 else np.zeros((0,))
        self.reports = [BuildReport(float(c), r, n) for c, r, n in zip(conds, all_retries, counts)]

        self.N = cloud.N
        self.eps = jnp.array(all_eps)
        self.eps_inv_pow = 1. / self.eps**self.order
        self.kernel_offsets = np.concatenate(([0], np.cumsum(counts, dtype=int)))
        self.kernels = jnp.concatenate(all_kernels) if self.N > 0 else jnp.zeros((0,))
        self.neighbour_keys = np.concatenate(all_neighbours).astype(int) if self.N > 0 else np.zeros((0,), dtype=int)
        self.reference_keys = np.repeat(np.arange(self.N), counts)
        self.epoch = cloud.epoch

        self._log_build_summary()

    def rebuild(self):
        """ Alias of update() """
        return self.update()

    def _log_build_summary(self):
        nb_monomials = len(self.basis)
        too_small = sum(1 for r in self.reports if r.support_size < nb_monomials)
        ill_conditioned = sum(1 for r in self.reports if r.cond > self.cond_tol)

        if too_small > 0:
            logger.warning("%d of %d supports hold fewer particles than the %d monomials of the basis, their kernels are least-squares approximations",
                           too_small, self.N, nb_monomials)
        if ill_conditioned > 0 and not self.adaptive:
            logger.warning("%d of %d particles have cond(V) greater than TOL = %.3g", ill_conditioned, self.N, self.cond_tol)
        logger.debug("Built %s with %d kernel weights", self, self.kernels.shape[0])


    def _check_epoch(self):
        if self.cloud.epoch == self.epoch:
            return
        if self.check_epoch:
            raise StaleCacheError("The cloud was remapped (epoch %d) since this operator was last updated (epoch %d). Call update() first"
                                  % (self.cloud.epoch, self.epoch))
        logger.debug("Applying an operator built at epoch %d on a cloud at epoch %d", self.epoch, self.cloud.epoch)

    def _field_view(self, field, component=None):
        """ Turns a field name, an array, or a view into a view holding values on local and ghost particles """
        if isinstance(field, str):
            field = self.cloud.field(field)
        if isinstance(field, VectorComponentView):
            field = field._replace(values=self.cloud.extend_to_ghosts(field.values))
            return make_field_view(field, component)
        if isinstance(field, ScalarFieldView):
            field = field.values
        return make_field_view(self.cloud.extend_to_ghosts(field), component)

    def _check_key(self, key):
        if not 0 <= key < self.N:
            raise IndexError("Particle %d is not a local particle (0 to %d)" % (key, self.N-1))

    def apply(self, key:int, field, component:int=None):
        """Evaluates the operator at one particle

        Computes eps^-|alpha| sum_q (f(q) + sign f(p)) K(p, q), with sign = -1 for even orders and +1 for odd ones.
        Only uses the cached kernels, no rebuild is ever triggered.

        Args:
            key (int): The local particle p
            field (str, Float[Array, "nb_nodes ..."], ScalarFieldView or VectorComponentView): The field f, given by its name in the cloud, its values, or a view
            component (int, optional): The component to differentiate for vector fields. Defaults to None to differentiate all components.

        Raises:
            StaleCacheError: When the cloud was remapped since the last update (and check_epoch is on)

        Returns:
            float or Float[Array, "..."]: The value of the operator at p
        """
        self._check_epoch()
        self._check_key(key)
        view = self._field_view(field, component)

        start, stop = self.kernel_offsets[key], self.kernel_offsets[key+1]
        weights = self.kernels[start:stop]
        fq = view.at(jnp.asarray(self.neighbour_keys[start:stop]))
        fp = view.at(key)

        weights = weights.reshape(weights.shape + (1,)*(fq.ndim-1))
        return self.eps_inv_pow[key] * jnp.sum((fq + self.sign*fp) * weights, axis=0)

    def apply_all(self, field, component:int=None):
        """Evaluates the operator at every local particle at once

        Args:
            field (str, Float[Array, "nb_nodes ..."], ScalarFieldView or VectorComponentView): See apply()
            component (int, optional): See apply(). Defaults to None.

        Returns:
            Float[Array, "nb_nodes ..."]: The value of the operator at each local particle
        """
        self._check_epoch()
        view = self._field_view(field, component)

        rows = jnp.asarray(self.reference_keys)
        fq = view.at(jnp.asarray(self.neighbour_keys))
        fp = view.at(rows)

        weights = self.kernels.reshape(self.kernels.shape + (1,)*(fq.ndim-1))
        res = jax.ops.segment_sum((fq + self.sign*fp) * weights, rows, num_segments=self.N)
        return res * self.eps_inv_pow.reshape(self.eps_inv_pow.shape + (1,)*(res.ndim-1))

    def compute_differential_operator(self, src:str, dst:str, component:int=None):
        """ Evaluates the operator on the cloud field 'src' and stores the result in the cloud field 'dst' """
        res = self.apply_all(src, component)
        self.cloud.add_field(dst, res)
        return res


    def num_neighbours(self, key:int):
        """ Number of particles in the support of a particle (itself included) """
        self._check_key(key)
        return int(self.kernel_offsets[key+1] - self.kernel_offsets[key])

    def coefficient(self, key:int, j:int):
        """ The kernel weight of the j-th particle in the support of a particle """
        if not 0 <= j < self.num_neighbours(key):
            raise IndexError("Particle %d has only %d neighbours" % (key, self.num_neighbours(key)))
        return self.kernels[self.kernel_offsets[key] + j]

    def neighbour_index(self, key:int, j:int):
        """ The key of the j-th particle in the support of a particle """
        if not 0 <= j < self.num_neighbours(key):
            raise IndexError("Particle %d has only %d neighbours" % (key, self.num_neighbours(key)))
        return int(self.neighbour_keys[self.kernel_offsets[key] + j])

    def support(self, key:int):
        self._check_key(key)
        return Support(key, self.neighbour_keys[self.kernel_offsets[key]:self.kernel_offsets[key+1]])

    def epsilon_inv_prefactor(self, key:int):
        """ The cached eps^-|alpha| of a particle """
        self._check_key(key)
        return self.eps_inv_pow[key]

    def record(self, key:int):
        """ Everything cached for a particle: eps, eps^-|alpha|, and the position of its weights in the flat arrays """
        self._check_key(key)
        return KernelRecord(float(self.eps[key]), float(self.eps_inv_pow[key]), int(self.kernel_offsets[key]), self.num_neighbours(key))


    def draw_kernel(self, key:int, name:str, component:int=None):
        """Adds the kernel weights of a particle to a cloud field, at each particle of its support (for visualisation)

        Args:
            key (int): The particle whose kernel to draw
            name (str): The cloud field to write into. Created with zeros if it does not exist, with one component per dimension when a component is given
            component (int, optional): The component to write into for vector fields. Defaults to None.
        """
        if name not in self.cloud.fields:
            if component is None:
                self.cloud.add_field(name, 0.)
            else:
                self.cloud.add_field(name, jnp.zeros((self.cloud.N_total, self.cloud.dim)))
        support = self.support(key)
        weights = self.kernels[self.kernel_offsets[key]:self.kernel_offsets[key+1]]
        keys = jnp.asarray(support.keys)

        values = self.cloud.field(name)
        if component is None:
            values = values.at[keys].add(weights)
        else:
            values = values.at[keys, component].add(weights)
        self.cloud.fields[name] = values

    def draw_kernel_nn(self, key:int, name:str):
        """ Marks the particles in the support of a particle with ones in a cloud field """
        if name not in self.cloud.fields:
            self.cloud.add_field(name, 0.)
        keys = jnp.asarray(self.support(key).keys)
        self.cloud.fields[name] = self.cloud.field(name).at[keys].set(1.)

    def check_momenta(self):
        """Computes the discrete moments sum_q K(p, q) z_q^beta of every kernel, for each monomial beta

        When every local system is solved exactly, the moments are equal to the right hand side of the
        moment conditions at every particle.

        Returns:
            tuple(Float[Array, "nb_monomials"], Float[Array, "nb_monomials"]): The minimum and maximum moment of each monomial over all particles
        """
        self._check_epoch()
        nb_monomials = len(self.basis)
        mins = jnp.full((nb_monomials,), jnp.inf)
        maxs = jnp.full((nb_monomials,), -jnp.inf)

        for key in range(self.N):
            support = self.support(key)
            weights = self.kernels[self.kernel_offsets[key]:self.kernel_offsets[key+1]]
            z = support_offsets(support, self.cloud) / self.eps[key]
            momenta = self.basis.evaluate(z).T @ weights
            mins = jnp.minimum(mins, momenta)
            maxs = jnp.maximum(maxs, momenta)

        for i, exponent in enumerate(self.basis):
            logger.info("MOMENTA: %s Min: %.6g Max: %.6g", exponent, float(mins[i]), float(maxs[i]))

        return mins, maxs




class CompositeOperator(object):
    """ An operator made of one DC-PSE derivative per axis of the cloud """

    def __init__(self, cloud:Cloud, convergence_order:int, rcut:float, derivative_order:int, **kwargs):
        """
        Args:
            cloud (Cloud): The particles
            convergence_order (int): The convergence order of each derivative
            rcut (float): The cutoff radius of the supports
            derivative_order (int): The order of the derivative along each axis, e.g. 2 for d^2/dx^2
            **kwargs: The other arguments of Dcpse
        """
        self.cloud = cloud
        self.derivatives = []
        for d in range(cloud.dim):
            signature = tuple(derivative_order if i == d else 0 for i in range(cloud.dim))
            self.derivatives.append(Dcpse(cloud, signature, convergence_order, rcut, **kwargs))

    def update(self):
        for derivative in self.derivatives:
            derivative.update()


class Gradient(CompositeOperator):
    """ The gradient of a scalar field """

    def __init__(self, cloud:Cloud, convergence_order:int, rcut:float, **kwargs):
        super().__init__(cloud, convergence_order, rcut, 1, **kwargs)

    def apply(self, key, field):
        return jnp.stack([d.apply(key, field) for d in self.derivatives], axis=-1)

    def apply_all(self, field):
        return jnp.stack([d.apply_all(field) for d in self.derivatives], axis=-1)


class Laplacian(CompositeOperator):
    """ The Laplacian of a scalar field, as the sum of the pure second derivatives """

    def __init__(self, cloud:Cloud, convergence_order:int, rcut:float, **kwargs):
        super().__init__(cloud, convergence_order, rcut, 2, **kwargs)

    def apply(self, key, field):
        return sum(d.apply(key, field) for d in self.derivatives)

    def apply_all(self, field):
        return sum(d.apply_all(field) for d in self.derivatives)


class Divergence(CompositeOperator):
    """ The divergence of a vector field, with as many components as the cloud has dimensions """

    def __init__(self, cloud:Cloud, convergence_order:int, rcut:float, **kwargs):
        super().__init__(cloud, convergence_order, rcut, 1, **kwargs)

    def apply(self, key, field):
        return sum(d.apply(key, field, component=i) for i, d in enumerate(self.derivatives))

    def apply_all(self, field):
        return sum(d.apply_all(field, component=i) for i, d in enumerate(self.derivatives))
