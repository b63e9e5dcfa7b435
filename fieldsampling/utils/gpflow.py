# Copyright 2024 The SGP-Tools Contributors. All Rights Reserved.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
# http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.


import gpflow
from gpflow.utilities import positive
import tensorflow as tf
import numpy as np
from typing import Union, List, Tuple, Any, Callable

from ..errors import NumericError


def get_kernel(lengthscales: Union[float, List[float]] = 1.0,
               variance: float = 1.0) -> gpflow.kernels.Kernel:
    """
    Builds the squared exponential kernel used by every mixture component.

    Args:
        lengthscales (Union[float, List[float]]): Kernel lengthscale(s). If a float, it's
                                  applied uniformly to both domain axes. If a list, each element
                                  corresponds to one axis. Defaults to 1.0.
        variance (float): Kernel signal variance. Defaults to 1.0.

    Returns:
        gpflow.kernels.Kernel: A `gpflow.kernels.SquaredExponential` kernel.

    Usage:
        ```python
        from fieldsampling.utils.gpflow import get_kernel

        kernel = get_kernel(lengthscales=[1.0, 2.0], variance=0.5)
        ```
    """
    if np.ndim(lengthscales) > 0:
        lengthscales = np.asarray(lengthscales, dtype=np.float64)
    return gpflow.kernels.SquaredExponential(lengthscales=lengthscales,
                                             variance=variance)


def get_noise_variance(noise_variance: float) -> gpflow.Parameter:
    """Wraps a noise variance in a positive GPflow parameter."""
    return gpflow.Parameter(noise_variance, transform=positive())


def to_tensor(X: np.ndarray) -> tf.Tensor:
    return tf.convert_to_tensor(X, dtype=gpflow.default_float())


def weighted_conditional(
    X: tf.Tensor,
    err: tf.Tensor,
    noise_diag: tf.Tensor,
    kernel: gpflow.kernels.Kernel,
    Xnew: tf.Tensor,
) -> Tuple[tf.Tensor, tf.Tensor]:
    """
    Computes the latent GP posterior mean and marginal variance at `Xnew`
    given training inputs with per-sample (heteroscedastic) noise.

    The noise vector is added to the diagonal of the training kernel matrix
    before it is factorized; it acts as the ridge that keeps the system
    well-conditioned.

    Args:
        X (tf.Tensor): (n, d); Training inputs.
        err (tf.Tensor): (n, 1); Training labels minus the mean offset.
        noise_diag (tf.Tensor): (n,); Noise variance of each training sample.
        kernel (gpflow.kernels.Kernel): Kernel function.
        Xnew (tf.Tensor): (m, d); Query inputs.

    Returns:
        Tuple[tf.Tensor, tf.Tensor]: (mean, variance), each of shape (m, 1).

    Raises:
        NumericError: If the noisy kernel matrix cannot be factorized.
    """
    kmm = kernel(X)
    kmm_plus_s = tf.linalg.set_diag(kmm, tf.linalg.diag_part(kmm) + noise_diag)
    kmn = kernel(X, Xnew)
    knn = kernel(Xnew, full_cov=False)

    conditional = gpflow.conditionals.base_conditional
    try:
        f_mean, f_var = conditional(kmn, kmm_plus_s, knn, err,
                                    full_cov=False, white=False)
    except tf.errors.InvalidArgumentError as e:
        raise NumericError(
            f"Kernel matrix of {X.shape[0]} samples is not positive definite"
        ) from e
    if not (np.all(np.isfinite(f_mean.numpy())) and
            np.all(np.isfinite(f_var.numpy()))):
        raise NumericError("Non-finite GP posterior; kernel matrix is ill-conditioned")
    return f_mean, f_var


def weighted_log_marginal_likelihood(
    X: tf.Tensor,
    err: tf.Tensor,
    noise_diag: tf.Tensor,
    kernel: gpflow.kernels.Kernel,
) -> tf.Tensor:
    """
    Computes the log marginal likelihood `log N(err | 0, K + diag(noise_diag))`.

    Args:
        X (tf.Tensor): (n, d); Training inputs.
        err (tf.Tensor): (n, 1); Training labels minus the mean offset.
        noise_diag (tf.Tensor): (n,); Noise variance of each training sample.
        kernel (gpflow.kernels.Kernel): Kernel function.

    Returns:
        tf.Tensor: Scalar log marginal likelihood.
    """
    K = kernel(X)
    ks = tf.linalg.set_diag(K, tf.linalg.diag_part(K) + noise_diag)
    L = tf.linalg.cholesky(ks)
    log_prob = gpflow.logdensities.multivariate_normal(
        err, tf.zeros_like(err), L)
    return tf.reduce_sum(log_prob)


def optimize_model(training_loss: Callable[[], tf.Tensor],
                   trainable_variables: List[tf.Variable],
                   max_steps: int = 2000,
                   optimizer: str = 'scipy.L-BFGS-B',
                   verbose: bool = False,
                   **kwargs: Any) -> np.ndarray:
    """
    Minimizes a training loss over the given variables with one of SciPy's
    optimizers through `gpflow.optimizers.Scipy`.

    Args:
        training_loss (Callable[[], tf.Tensor]): Closure returning the scalar loss to minimize.
        trainable_variables (List[tf.Variable]): Variables to optimize.
        max_steps (int): Maximum number of optimizer iterations. Defaults to 2000.
        optimizer (str): Specifies the optimizer in "scipy.<method>" format, where
                         `<method>` is any `scipy.optimize.minimize` method
                         (e.g., 'L-BFGS-B', 'CG'). Defaults to 'scipy.L-BFGS-B'.
        verbose (bool): Passed to SciPy as the `disp` option. Defaults to False.
        **kwargs: Additional keyword arguments passed to `gpflow.optimizers.Scipy.minimize`.

    Returns:
        np.ndarray: (1,); Final loss value.

    Raises:
        ValueError: If an invalid optimizer format or an unsupported backend is specified.

    Usage:
        ```python
        kernel = get_kernel(1.0, 1.0)
        loss = lambda: -weighted_log_marginal_likelihood(X, err, noise, kernel)
        losses = optimize_model(loss, kernel.trainable_variables, max_steps=100)
        ```
    """
    optimizer_parts = optimizer.split('.')
    if len(optimizer_parts) != 2:
        raise ValueError(
            f"Invalid optimizer format! Expected <backend>.<method>; got {optimizer}"
        )
    backend, method = optimizer_parts
    if backend != 'scipy':
        raise ValueError(f"Invalid backend! Expected `scipy`; got {backend}")

    opt = gpflow.optimizers.Scipy()
    results = opt.minimize(training_loss,
                           trainable_variables,
                           method=method,
                           options=dict(disp=verbose, maxiter=max_steps),
                           **kwargs)
    return np.array([results.fun])
