import jax
import jax.numpy as jnp
from jax.tree_util import Partial

from dcpse.config import EPS_FACTOR
from dcpse.cloud import Cloud
from dcpse.monomials import MonomialBasis, evaluate_monomials
from dcpse.support import Support


def support_offsets(support:Support, cloud:Cloud):
    """ The offsets x_p - x_q from each particle q of the support to the reference particle p """
    xp = cloud.get_pos(support.reference_key)
    return xp[None, :] - cloud.positions[jnp.asarray(support.keys)]


@jax.jit
def compute_eps(offsets, factor=EPS_FACTOR, fallback=1.):
    """Chooses the local length scale epsilon as a fraction of the average (1-norm) spacing in the support

    Args:
        offsets (Float[Array, "support_size dim"]): The offsets x_p - x_q
        factor (float, optional): The fraction of the average spacing to use. Defaults to EPS_FACTOR.
        fallback (float, optional): The value to use when every offset is zero (the support only holds the reference particle). Defaults to 1.

    Returns:
        float: epsilon
    """
    spacing = jnp.mean(jnp.sum(jnp.abs(offsets), axis=-1))
    return jnp.where(spacing > 0., factor*spacing, fallback)


@Partial(jax.jit, static_argnums=2)
def core_vandermonde(offsets, exponents, max_degree, factor=EPS_FACTOR, fallback=1.):
    """ Vandermonde matrix and epsilon directly from the offsets and monomial exponents """
    eps = compute_eps(offsets, factor, fallback)
    return evaluate_monomials(offsets / eps, exponents, max_degree), eps


def assemble_vandermonde(support:Support, basis:MonomialBasis, cloud:Cloud, factor:float=EPS_FACTOR, fallback:float=1.):
    """Assembles the Vandermonde matrix V of a support

    Row q holds the values of every monomial of the basis at (x_p - x_q) / epsilon. Normalising by
    epsilon keeps the entries of order one, without it V is numerically singular for closely spaced
    particles.

    Args:
        support (Support): The support of the reference particle p
        basis (MonomialBasis): The monomials to evaluate
        cloud (Cloud): The cloud holding the positions
        factor (float, optional): See compute_eps(). Defaults to EPS_FACTOR.
        fallback (float, optional): See compute_eps(). Defaults to 1.

    Returns:
        tuple(Float[Array, "support_size nb_monomials"], float): The matrix V and epsilon
    """
    offsets = support_offsets(support, cloud)
    return core_vandermonde(offsets, basis.exponents, basis.max_exponent, factor, fallback)


@jax.jit
def condition_number(V):
    """Condition number of V from its singular values

    Args:
        V (Float[Array, "support_size nb_monomials"]): The Vandermonde matrix

    Returns:
        float: The ratio of the largest to the smallest singular value. Infinite when V has less rows than columns, or is singular.
    """
    if V.shape[0] < V.shape[1]:     ## Under-determined: not enough particles in the support
        return jnp.array(jnp.inf)
    s = jnp.linalg.svd(V, compute_uv=False)
    return jnp.where(s[-1] > 0., s[0] / s[-1], jnp.inf)
