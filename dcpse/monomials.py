import itertools
import math

import jax
import jax.numpy as jnp
from jax.tree_util import Partial


def nb_monomials(max_degree, problem_dimension):
    """Computes the number of monomials of degree less than or equal 'max_degree', in dimension 'problem_dimension'"""
    return math.comb(max_degree+problem_dimension, max_degree)


def monomial_order(exponent):
    """ Total degree of a monomial given by its exponent tuple """
    return sum(exponent)


def graded_exponents(max_degree, dim):
    """Lists the exponent tuples of all monomials up to (and including) a total degree

    Inside each degree the monomials are sorted reverse-lexicographically, i.e. in 2D:
    1, x, y, x^2, xy, y^2, x^3, ...

    Args:
        max_degree (int): The maximum total degree
        dim (int): The problem dimension

    Returns:
        list[tuple]: The exponent tuples
    """
    exponents = []
    for degree in range(max_degree+1):
        same_degree = [e for e in itertools.product(range(degree+1), repeat=dim) if sum(e) == degree]
        exponents += sorted(same_degree, reverse=True)
    return exponents


@Partial(jax.jit, static_argnums=2)
def evaluate_monomials(z, exponents, max_degree):
    """Evaluates every monomial at every point

    Args:
        z (Float[Array, "nb_points dim"]): The (normalised) points
        exponents (Int[Array, "nb_monomials dim"]): The exponent tuples of the monomials
        max_degree (int): The largest exponent found in 'exponents'

    Returns:
        Float[Array, "nb_points nb_monomials"]: The monomial values, one row per point
    """
    powers = jnp.stack([z**k for k in range(max_degree+1)], axis=-1)     ## Integer powers, exact for negative z
    dims = jnp.arange(z.shape[1])
    return jnp.prod(powers[:, dims[None, :], exponents], axis=-1)


class MonomialBasis(object):
    """ The ordered set of monomials used as local trial functions for a differential signature """

    def __init__(self, signature, convergence_order):
        """Generates the basis

        Every monomial whose total degree is strictly less than |signature| + convergence_order is
        kept, which is what a Taylor expansion needs to recover the derivative up to the requested
        order. The monomial matching the signature is always part of the basis.

        Args:
            signature (tuple[int]): The differential signature, one exponent per dimension
            convergence_order (int): The requested convergence order

        Raises:
            ValueError: When the signature is empty or has negative entries, or the order is negative
        """
        signature = tuple(int(s) for s in signature)
        if len(signature) == 0:
            raise ValueError("The differential signature must have at least one dimension")
        if min(signature) < 0:
            raise ValueError("The differential signature can't have negative entries: %s" % (signature,))
        if convergence_order < 0:
            raise ValueError("The convergence order must be non-negative")

        self.signature = signature
        self.convergence_order = int(convergence_order)
        self.dim = len(signature)
        self.order_limit = monomial_order(signature) + self.convergence_order

        elements = graded_exponents(self.order_limit-1, self.dim) if self.order_limit > 0 else []
        if signature not in elements:
            elements.append(signature)

        self.elements = tuple(elements)
        self.exponents = jnp.array(self.elements, dtype=int)
        self.max_exponent = max(max(e) for e in self.elements)
        self._positions = {e:i for i, e in enumerate(self.elements)}

    def __len__(self):
        return len(self.elements)

    def __iter__(self):
        return iter(self.elements)

    def __getitem__(self, i):
        return self.elements[i]

    def __contains__(self, exponent):
        return tuple(exponent) in self._positions

    def __repr__(self):
        return "MonomialBasis(signature=%s, convergence_order=%d, size=%d)" % (self.signature, self.convergence_order, len(self))

    def index(self, exponent):
        """ Position of a monomial in the basis """
        return self._positions[tuple(int(e) for e in exponent)]

    def evaluate(self, z):
        """ Values of all monomials at the points z, with shape (nb_points, nb_monomials) """
        z = jnp.atleast_2d(jnp.asarray(z, dtype=float))
        return evaluate_monomials(z, self.exponents, self.max_exponent)
