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


import numpy as np

from ..errors import DimensionMismatchError


def _check_lengths(*arrays: np.ndarray) -> None:
    sizes = {np.size(a) for a in arrays}
    if len(sizes) != 1:
        raise DimensionMismatchError(
            f"Size mismatch: {[np.size(a) for a in arrays]}")


def get_rmse(y_pred: np.ndarray, y_test: np.ndarray) -> float:
    """
    Computes the Root Mean Square Error (RMSE) between predicted and ground truth values.

    Args:
        y_pred (np.ndarray): (n,) or (n, 1); NumPy array of predicted values.
        y_test (np.ndarray): (n,) or (n, 1); NumPy array of ground truth values.

    Returns:
        float: The computed RMSE.

    Raises:
        DimensionMismatchError: If the two arrays hold a different number of values.

    Usage:
        ```python
        import numpy as np
        from fieldsampling.utils.metrics import get_rmse

        rmse_value = get_rmse(np.array([1., 2., 3.]), np.array([1., 2., 4.]))
        # sqrt(1/3) ~ 0.577
        ```
    """
    _check_lengths(y_pred, y_test)
    error = np.ravel(y_pred) - np.ravel(y_test)
    return float(np.sqrt(np.mean(np.square(error))))


def get_nlpd(y_pred: np.ndarray, y_test: np.ndarray, var: np.ndarray) -> float:
    """
    Computes the Negative Log Predictive Density (NLPD).
    A lower NLPD indicates that the ground truth is well explained by the
    predicted Gaussian, accounting for the model's uncertainty.

    Args:
        y_pred (np.ndarray): (n,); NumPy array of predicted mean values.
        y_test (np.ndarray): (n,); NumPy array of ground truth values.
        var (np.ndarray): (n,); NumPy array of predicted variances for each prediction.

    Returns:
        float: The computed NLPD value.

    Raises:
        ValueError: If `var` contains zero or negative values.
        DimensionMismatchError: If the arrays hold a different number of values.
    """
    _check_lengths(y_pred, y_test, var)
    var = np.ravel(var)
    if np.any(var <= 0):
        raise ValueError(
            "Predicted variance (var) must be strictly positive for NLPD calculation."
        )

    error = np.ravel(y_pred) - np.ravel(y_test)
    nlpd_terms = 0.5 * np.log(
        2 * np.pi) + 0.5 * np.log(var) + 0.5 * np.square(error) / var
    return float(np.mean(nlpd_terms))


def get_smse(y_pred: np.ndarray, y_test: np.ndarray, var: np.ndarray) -> float:
    """
    Computes the Standardized Mean Square Error (SMSE).
    Each squared error is divided by the predicted variance, so errors in
    regions the model is confident about weigh more.

    Args:
        y_pred (np.ndarray): (n,); NumPy array of predicted values.
        y_test (np.ndarray): (n,); NumPy array of ground truth values.
        var (np.ndarray): (n,); NumPy array of predicted variances for each prediction.

    Returns:
        float: The computed SMSE value.

    Raises:
        ValueError: If `var` contains zero or negative values.
        DimensionMismatchError: If the arrays hold a different number of values.

    Usage:
        ```python
        import numpy as np
        from fieldsampling.utils.metrics import get_smse

        smse_value = get_smse(np.array([1.1, 2.2]), np.array([1.0, 2.0]),
                              np.array([0.01, 0.04]))
        # mean(0.01 / 0.01, 0.04 / 0.04) = 1.0
        ```
    """
    _check_lengths(y_pred, y_test, var)
    var = np.ravel(var)
    if np.any(var <= 0):
        raise ValueError(
            "Predicted variance (var) must be strictly positive for SMSE calculation."
        )

    error = np.ravel(y_pred) - np.ravel(y_test)
    return float(np.mean(np.square(error) / var))
