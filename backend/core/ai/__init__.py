"""AI module for email classification"""
from .classifier import EmailClassifier, ClassificationResult, ClassifierFactory, ConnectionCheck

__all__ = ['EmailClassifier', 'ClassificationResult', 'ClassifierFactory', 'ConnectionCheck']
