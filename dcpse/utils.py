import jax.numpy as jnp

from collections import namedtuple
import math


def distance(node1, node2):
    """ Euclidean distance between two points. """
    diff = node1 - node2
    return jnp.sqrt(diff.T @ diff)


def multi_factorial(signature):
    """ Product of the factorials of each entry of a multi-index, i.e. alpha! """
    res = 1
    for s in signature:
        res *= math.factorial(int(s))
    return res


def differential_sign(order):
    """Sign used to symmetrise the DC-PSE sum: -1 for even derivative orders, +1 for odd ones

    Args:
        order (int): The total order of the derivative, i.e. the sum of the differential signature

    Returns:
        int: -1 or 1
    """
    if order % 2 == 0:
        return -1
    return 1


## Cached quantities for a single particle. Offset and count index the flat kernel arrays
KernelRecord = namedtuple('KernelRecord', ['eps', 'eps_inv_pow', 'offset', 'count'])

## What happened while building the kernel of a single particle
BuildReport = namedtuple('BuildReport', ['cond', 'retries', 'support_size'])


class ScalarFieldView(namedtuple('ScalarFieldView', ['values'])):
    """ A field read as is, one (scalar, vector or small tensor) value per particle """
    __slots__ = ()

    def at(self, keys):
        return self.values[keys]


class VectorComponentView(namedtuple('VectorComponentView', ['values', 'component'])):
    """ A single component of a vector field """
    __slots__ = ()

    def at(self, keys):
        return self.values[keys, self.component]


def make_field_view(field, component=None):
    """Wraps field values into one of the field views

    Args:
        field (Float[Array, "nb_nodes ..."] or ScalarFieldView or VectorComponentView): The field values, or an existing view
        component (int, optional): The component to select for vector fields. Defaults to None.

    Raises:
        ValueError: When a component is requested on a scalar field

    Returns:
        ScalarFieldView or VectorComponentView: The view to evaluate the field with
    """
    if isinstance(field, VectorComponentView):
        if component is not None and component != field.component:
            raise ValueError("Conflicting components: %s and %s" % (field.component, component))
        return field
    if isinstance(field, ScalarFieldView):
        field = field.values

    values = jnp.asarray(field)
    if component is None:
        return ScalarFieldView(values)
    if values.ndim < 2:
        raise ValueError("Can't select component %s of a scalar field" % component)
    return VectorComponentView(values, component)


def set_plot_style():
    import matplotlib.pyplot as plt
    import seaborn as sns
    sns.set(context='notebook', style='ticks',
            font='sans-serif', font_scale=1, color_codes=True, rc={"lines.linewidth": 2})
    plt.style.use("dark_background")


def plot(*args, ax=None, figsize=(6,3.5), x_label=None, y_label=None, title=None, x_scale='linear', y_scale='linear', xlim=None, ylim=None, **kwargs):
    """Wrapper function for matplotlib and seaborn"""
    import matplotlib.pyplot as plt
    set_plot_style()

    if ax==None:
        _, ax = plt.subplots(1, 1, figsize=figsize)
    if x_label:
        ax.set_xlabel(x_label)
    if y_label:
        ax.set_ylabel(y_label)
    if title:
        ax.set_title(title)
    ax.plot(*args, **kwargs)
    ax.set_xscale(x_scale)
    ax.set_yscale(y_scale)
    if "label" in kwargs.keys():
        ax.legend()
    if ylim:
        ax.set_ylim(ylim)
    if xlim:
        ax.set_xlim(xlim)
    plt.tight_layout()
    return ax
