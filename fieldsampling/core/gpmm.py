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


"""Provides the mixture of Gaussian processes field model trained with EM
"""

import logging
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple, Union

import gpflow
import numpy as np
import tensorflow as tf
from scipy.special import logsumexp

from ..errors import (ConfigError, DataError, DimensionMismatchError,
                      InsufficientDataError, NumericError)
from ..utils.gpflow import (get_kernel, get_noise_variance, optimize_model,
                            to_tensor, weighted_conditional,
                            weighted_log_marginal_likelihood)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ComponentParams:
    """Initial hyperparameters of one mixture component.

    Args:
        lengthscales (float or list): Squared exponential lengthscale(s)
        signal_variance (float): Kernel signal variance
        noise_variance (float): Observation noise variance; also used as
            the ridge added to the kernel matrix
    """
    lengthscales: Union[float, Tuple[float, ...]] = 1.0
    signal_variance: float = 1.0
    noise_variance: float = 0.1

    def __post_init__(self):
        try:
            lengthscales = np.asarray(self.lengthscales, dtype=np.float64)
            signal_variance = float(self.signal_variance)
            noise_variance = float(self.noise_variance)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Hyperparameters must be numeric: {e}") from e
        if lengthscales.ndim > 1 or lengthscales.size == 0 or \
                not np.all(np.isfinite(lengthscales)) or np.any(lengthscales <= 0):
            raise ConfigError(
                f"Lengthscales must be positive; got {self.lengthscales}")
        if not signal_variance > 0:
            raise ConfigError(
                f"Signal variance must be positive; got {self.signal_variance}")
        if not noise_variance > 0:
            raise ConfigError(
                f"Noise variance must be positive; got {self.noise_variance}")
        if lengthscales.ndim > 0:
            lengthscales = tuple(float(l) for l in lengthscales)
        else:
            lengthscales = float(lengthscales)
        object.__setattr__(self, 'lengthscales', lengthscales)
        object.__setattr__(self, 'signal_variance', signal_variance)
        object.__setattr__(self, 'noise_variance', noise_variance)


@dataclass(frozen=True)
class PredictionVector:
    """Posterior mean and variance over the domain grid.

    `version` increases by one every time a new prediction is committed.
    """
    mean: np.ndarray
    variance: np.ndarray
    version: int


class GaussianProcessComponent:
    """One Gaussian process of the mixture.

    The component is fit to responsibility-weighted samples: sample `j` with
    responsibility `r_j` gets the noise variance `noise_variance / r_j`, so
    samples the component does not explain have almost no influence on its
    posterior. The constant mean offset is the responsibility-weighted mean of
    the sample values.

    Args:
        params (ComponentParams): Initial hyperparameters
        weight (float): Mixing weight
    """
    def __init__(self, params: ComponentParams, weight: float = 1.0):
        self.params = params
        self.kernel = get_kernel(params.lengthscales, params.signal_variance)
        self.noise_variance = get_noise_variance(params.noise_variance)
        self.weight = weight
        self.offset = 0.0
        self.min_responsibility = 1e-6
        self.X = None
        self.err = None
        self.responsibility = None

    @property
    def trainable_variables(self) -> List[tf.Variable]:
        return list(self.kernel.trainable_variables) + \
               list(self.noise_variance.trainable_variables)

    def noise_diag(self) -> tf.Tensor:
        return self.noise_variance / tf.maximum(self.responsibility,
                                                self.min_responsibility)

    def fit(self, X: tf.Tensor, y: np.ndarray, responsibility: np.ndarray,
            min_responsibility: float = 1e-6,
            optimize_hparams: bool = False,
            hparam_steps: int = 50) -> None:
        """Conditions the component on responsibility-weighted samples.

        Args:
            X (tf.Tensor): (n, d); Sample locations
            y (ndarray): (n,); Sample values
            responsibility (ndarray): (n,); Membership probability of each sample
            min_responsibility (float): Floor applied to the responsibilities
            optimize_hparams (bool): If True, the kernel and noise variance are
                refit by maximizing the weighted marginal likelihood
            hparam_steps (int): Maximum L-BFGS-B iterations
        """
        total = float(np.sum(responsibility))
        if total > 0:
            self.offset = float(np.sum(responsibility * y) / total)
        else:
            self.offset = float(np.mean(y))
        self.X = X
        self.err = to_tensor((y - self.offset).reshape(-1, 1))
        self.responsibility = to_tensor(responsibility)
        self.min_responsibility = min_responsibility

        if optimize_hparams:
            loss = lambda: -weighted_log_marginal_likelihood(
                self.X, self.err, self.noise_diag(), self.kernel)
            try:
                optimize_model(loss, self.trainable_variables,
                               max_steps=hparam_steps)
            except tf.errors.InvalidArgumentError as e:
                raise NumericError(
                    "Kernel matrix became singular while optimizing hyperparameters"
                ) from e

    def predict_f(self, Xnew: tf.Tensor) -> Tuple[np.ndarray, np.ndarray]:
        """Latent posterior mean and variance at `Xnew`, each of shape (m,)."""
        mean, var = weighted_conditional(self.X, self.err, self.noise_diag(),
                                         self.kernel, Xnew)
        return (mean.numpy()[:, 0] + self.offset,
                np.maximum(var.numpy()[:, 0], 0.0))

    def log_density(self, X: tf.Tensor, y: np.ndarray) -> np.ndarray:
        """Log predictive density of each sample under this component."""
        mean, var = self.predict_f(X)
        var = var + self.noise_variance.numpy()
        return gpflow.logdensities.gaussian(to_tensor(y), to_tensor(mean),
                                            to_tensor(var)).numpy()

    def get_params(self) -> Dict[str, Union[float, np.ndarray]]:
        return {
            'lengthscales': self.kernel.lengthscales.numpy(),
            'signal_variance': float(self.kernel.variance.numpy()),
            'noise_variance': float(self.noise_variance.numpy()),
            'weight': float(self.weight),
            'offset': float(self.offset),
        }


class GaussianProcessMixture:
    """Mixture of Gaussian processes trained with Expectation-Maximization.

    Training always restarts from the configured hyperparameters with uniform
    responsibilities, so identical samples and settings produce identical
    models. With a single component the model is plain GP regression with a
    constant mean.

    If a domain grid is attached, every successful `train` also predicts over
    the grid and commits the new components together with the new
    `PredictionVector`. A failed `train` leaves the previous state intact.

    The model is thread-safe: trainings are serialized and the commit of a
    training pass never interleaves with a prediction.

    Args:
        components (Sequence[ComponentParams]): Initial hyperparameters, one per component
        max_iterations (int): EM iteration cap
        eps (float): Stop once the log-likelihood improves by less than `eps`
        min_responsibility (float): Floor applied to the responsibilities
        optimize_hparams (bool): Refit the hyperparameters in every M-step
        hparam_steps (int): Maximum optimizer iterations per M-step
        domain (DomainGrid): Optional grid used by `update_prediction`
    """
    def __init__(self,
                 components: Sequence[ComponentParams],
                 max_iterations: int = 100,
                 eps: float = 1e-3,
                 min_responsibility: float = 1e-6,
                 optimize_hparams: bool = False,
                 hparam_steps: int = 50,
                 domain=None):
        if len(components) == 0:
            raise ConfigError("At least one mixture component is required")
        if max_iterations < 1:
            raise ConfigError(
                f"max_iterations must be at least 1; got {max_iterations}")
        if eps < 0:
            raise ConfigError(f"eps must be non-negative; got {eps}")
        if not 0 < min_responsibility <= 1:
            raise ConfigError(
                f"min_responsibility must be in (0, 1]; got {min_responsibility}")

        self.params = tuple(components)
        self.num_components = len(self.params)
        self.max_iterations = max_iterations
        self.eps = eps
        self.min_responsibility = min_responsibility
        self.optimize_hparams = optimize_hparams
        self.hparam_steps = hparam_steps
        self.domain = domain

        self._lock = threading.RLock()
        self._train_lock = threading.Lock()
        self._components = self._init_components()
        self._trained = False
        self._prediction: Optional[PredictionVector] = None
        self._version = 0

        self.log_likelihoods = np.array([])
        self.responsibilities = None
        self.num_samples = 0

    def _init_components(self) -> List[GaussianProcessComponent]:
        weight = 1.0 / self.num_components
        return [GaussianProcessComponent(p, weight) for p in self.params]

    @staticmethod
    def _check_locations(locations) -> np.ndarray:
        X = np.asarray(locations, dtype=np.float64)
        if X.ndim != 2:
            raise DimensionMismatchError(
                f"Locations must have shape (n, d); got {X.shape}")
        return X

    def _check_data(self, locations, values) -> Tuple[np.ndarray, np.ndarray]:
        X = np.asarray(locations, dtype=np.float64)
        y = np.asarray(values, dtype=np.float64).reshape(-1)
        if X.ndim == 1 and X.size == 0:
            X = X.reshape(0, 2)
        X = self._check_locations(X)
        if len(X) != len(y):
            raise DimensionMismatchError(
                f"Got {len(X)} locations and {len(y)} values")
        if len(y) == 0:
            raise InsufficientDataError("Cannot train without samples")
        if not (np.all(np.isfinite(X)) and np.all(np.isfinite(y))):
            raise DataError("Training samples must be finite")
        return X, y

    @property
    def trained(self) -> bool:
        with self._lock:
            return self._trained

    def train(self, locations, values) -> np.ndarray:
        """Fits the mixture to the samples.

        Args:
            locations (ndarray): (n, d); Sample locations
            values (ndarray): (n,); Sample values

        Returns:
            log_likelihoods (ndarray): Data log-likelihood after every EM iteration

        Raises:
            InsufficientDataError: No samples were given
            DimensionMismatchError: The number of locations and values differ
            NumericError: A kernel matrix could not be factorized
        """
        X, y = self._check_data(locations, values)
        with self._train_lock:
            components = self._init_components()
            history, resp = self._expectation_maximization(components, X, y)
            prediction = None
            if self.domain is not None:
                mean, var = self._mixture_predict(components,
                                                  self.domain.locations)
                prediction = (mean, var)

            with self._lock:
                self._components = components
                self._trained = True
                self.log_likelihoods = history
                self.responsibilities = resp
                self.num_samples = len(y)
                if prediction is not None:
                    self._commit_prediction(*prediction)
        logger.debug("Trained %d components on %d samples in %d iterations",
                     self.num_components, len(y), len(history))
        return history

    def _expectation_maximization(
            self, components: List[GaussianProcessComponent],
            X: np.ndarray, y: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        num_samples = len(y)
        X_tf = to_tensor(X)
        resp = np.full((num_samples, self.num_components),
                       1.0 / self.num_components)
        history = []
        prev_ll = -np.inf
        for iteration in range(self.max_iterations):
            # M-step
            weights = resp.sum(axis=0) / num_samples
            for k, component in enumerate(components):
                component.weight = float(weights[k])
                component.fit(X_tf, y, resp[:, k],
                              min_responsibility=self.min_responsibility,
                              optimize_hparams=self.optimize_hparams,
                              hparam_steps=self.hparam_steps)

            # E-step
            log_prob = np.stack([
                np.log(max(component.weight, 1e-300)) +
                component.log_density(X_tf, y) for component in components
            ], axis=1)
            log_norm = logsumexp(log_prob, axis=1)
            resp = np.exp(log_prob - log_norm[:, None])

            ll = float(np.sum(log_norm))
            if not np.isfinite(ll):
                raise NumericError(
                    f"Non-finite log-likelihood at EM iteration {iteration}")
            history.append(ll)
            logger.debug("EM iteration %d: log-likelihood %.6f", iteration, ll)
            if ll - prev_ll < self.eps:
                break
            prev_ll = ll
        return np.array(history), resp

    @staticmethod
    def _mixture_predict(components: List[GaussianProcessComponent],
                         locations: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        Xnew = to_tensor(locations)
        weights = np.array([c.weight for c in components])
        weights = weights / weights.sum()
        means, variances = zip(*[c.predict_f(Xnew) for c in components])
        means = np.stack(means, axis=0)
        variances = np.stack(variances, axis=0)

        mean = np.sum(weights[:, None] * means, axis=0)
        # Law of total variance; equal to sum(w(var + mu^2)) - mean^2
        var = np.sum(weights[:, None] * (variances + np.square(means - mean)),
                     axis=0)
        return mean, np.maximum(var, 0.0)

    def predict(self, locations) -> Tuple[np.ndarray, np.ndarray]:
        """Mixture posterior mean and variance at the query locations.

        Args:
            locations (ndarray): (m, d); Query locations

        Returns:
            mean (ndarray): (m,); Weight-normalized sum of the component means
            variance (ndarray): (m,); `sum_k w_k (var_k + mu_k^2) - mean^2`

        Raises:
            InsufficientDataError: The model has not been trained
        """
        X = self._check_locations(locations)
        with self._lock:
            if not self._trained:
                raise InsufficientDataError("Model has not been trained")
            return self._mixture_predict(self._components, X)

    def _commit_prediction(self, mean: np.ndarray, var: np.ndarray) -> None:
        mean.setflags(write=False)
        var.setflags(write=False)
        self._version += 1
        self._prediction = PredictionVector(mean, var, self._version)

    def update_prediction(self) -> PredictionVector:
        """Predicts over the attached domain and commits the result."""
        if self.domain is None:
            raise ConfigError("No domain grid attached to the model")
        with self._lock:
            mean, var = self.predict(self.domain.locations)
            self._commit_prediction(mean, var)
            return self._prediction

    @property
    def prediction(self) -> PredictionVector:
        """Latest committed prediction over the domain grid.

        Raises:
            InsufficientDataError: No prediction has been committed yet
        """
        with self._lock:
            if self._prediction is None:
                raise InsufficientDataError(
                    "No prediction available before the first training")
            return self._prediction

    def get_params(self) -> List[Dict[str, Union[float, np.ndarray]]]:
        """Hyperparameters, weights and offsets of every component."""
        with self._lock:
            return [c.get_params() for c in self._components]
