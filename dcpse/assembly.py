import jax
import jax.numpy as jnp
from jax.tree_util import Partial
import lineax as lx

from dcpse.config import EPS_FACTOR
from dcpse.monomials import MonomialBasis
from dcpse.utils import multi_factorial
from dcpse.vandermonde import core_vandermonde, condition_number


@jax.jit
def diagonal_scaling_matrix(offsets, eps):
    """Assembles the diagonal weight matrix E of the local least-squares fit

    The entries exp(-|x_p - x_q|^2 / (2 eps^2)) make the closest particles dominate the fit. Since the
    normal matrix uses E twice, the weights end up matching the exp(-|z|^2) factor of the kernel.

    Args:
        offsets (Float[Array, "support_size dim"]): The offsets x_p - x_q
        eps (float): The local length scale

    Returns:
        Float[Array, "support_size support_size"]: The matrix E
    """
    return jnp.diag(jnp.exp(-jnp.sum(offsets**2, axis=-1) / (2. * eps**2)))


def assemble_rhs(basis:MonomialBasis, signature=None):
    """Assembles the right hand side b of the moment conditions

    The only non-zero entry sits at the monomial matching the differential signature alpha, and is
    equal to (-1)^|alpha| alpha!, i.e. the derivative D^alpha of that monomial at the origin, signed.

    Args:
        basis (MonomialBasis): The monomial basis
        signature (tuple[int], optional): The differential signature. Defaults to None to use the signature of the basis.

    Returns:
        Float[Array, "nb_monomials"]: The vector b
    """
    signature = basis.signature if signature is None else tuple(signature)
    sign = (-1)**sum(signature)
    b = jnp.zeros((len(basis),))
    return b.at[basis.index(signature)].set(sign * multi_factorial(signature))


@jax.jit
def assemble_normal_matrix(V, E):
    """ The symmetric normal matrix A = (EV)^T (EV), of size nb_monomials, whatever the support size """
    B = E @ V
    return B.T @ B


@jax.jit
def solve_kernel_coefficients(A, b):
    """Solves A a = b for the kernel coefficients

    The SVD solver returns the (minimum norm) least-squares solution when A is singular, e.g. when
    the support holds fewer particles than there are monomials, instead of failing.

    Args:
        A (Float[Array, "nb_monomials nb_monomials"]): The normal matrix
        b (Float[Array, "nb_monomials"]): The right hand side

    Returns:
        Float[Array, "nb_monomials"]: The coefficients a
    """
    operator = lx.MatrixLinearOperator(A)
    return lx.linear_solve(operator, b, solver=lx.SVD()).value


@jax.jit
def compute_kernels(V, eps, offsets, coeffs):
    """ Evaluates the kernel sum_k a_k z^beta_k exp(-|z|^2) at each particle of the support, with z = (x_p - x_q) / eps """
    z = offsets / eps
    return (V @ coeffs) * jnp.exp(-jnp.sum(z**2, axis=-1))


@jax.jit
def core_compute_kernels(V, eps, offsets, b):
    """Computes the kernel weights of a whole support

    Args:
        V (Float[Array, "support_size nb_monomials"]): The Vandermonde matrix of the support
        eps (float): The local length scale
        offsets (Float[Array, "support_size dim"]): The offsets x_p - x_q
        b (Float[Array, "nb_monomials"]): The right hand side of the moment conditions

    Returns:
        tuple(Float[Array, "support_size"], Float[Array, "nb_monomials"]): The kernel weights, in support order, and the coefficients a
    """
    E = diagonal_scaling_matrix(offsets, eps)
    A = assemble_normal_matrix(V, E)
    coeffs = solve_kernel_coefficients(A, b)
    return compute_kernels(V, eps, offsets, coeffs), coeffs


@Partial(jax.jit, static_argnums=2)
def core_build_kernels(offsets, exponents, max_degree, b, factor=EPS_FACTOR, fallback=1.):
    """Builds the kernel of a support in a single compiled call, from its offsets to its weights

    Args:
        offsets (Float[Array, "support_size dim"]): The offsets x_p - x_q
        exponents (Int[Array, "nb_monomials dim"]): The exponent tuples of the monomial basis
        max_degree (int): The largest exponent of the basis
        b (Float[Array, "nb_monomials"]): The right hand side of the moment conditions
        factor (float, optional): See compute_eps(). Defaults to EPS_FACTOR.
        fallback (float, optional): See compute_eps(). Defaults to 1.

    Returns:
        tuple(Float[Array, "support_size"], float, float): The kernel weights, epsilon, and the condition number of the Vandermonde matrix
    """
    V, eps = core_vandermonde(offsets, exponents, max_degree, factor, fallback)
    kernels, _ = core_compute_kernels(V, eps, offsets, b)
    return kernels, eps, condition_number(V)
